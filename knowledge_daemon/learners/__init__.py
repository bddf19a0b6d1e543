"""
Learners that turn commits and error reports into stored knowledge.
"""
