from setuptools import setup, find_packages

setup(
    name="knowledge_daemon",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "pyyaml",
        # Graph file model
        "networkx>=3.0",
        # Graph file watcher
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "knowledge-daemon=knowledge_daemon.cli:main",
        ],
    },
    author="Uday Kanth",
    description="A project knowledge daemon that learns from commits and errors and syncs a knowledge graph.",
)
