"""
Setup script for learnpath-engine.

The learning path engine turns uploaded study materials into a personal
learning path. It serves three roles:

1. Concept graph - Extract, link and canonicalize the concepts a material set teaches
2. Activities - Generate grounded lessons, drills and quizzes for path nodes
3. Learner model - Promote recurring concept groupings into compound concepts

The 'learnpath' command runs individual stages and manages the database.
"""

from setuptools import find_namespace_packages, setup

setup(
    name="learnpath-engine",
    version="1.0.0",
    description="Learning path pipeline: concept graphs, grounded activities and learner state",
    long_description=open("README.md", encoding="utf-8").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_namespace_packages(include=["src", "src.*"]),
    py_modules=["config"],
    python_requires=">=3.10",
    install_requires=[
        # CLI
        "typer>=0.9.0",
        "rich>=13.0.0",
        # Database
        "sqlalchemy>=2.0.0,<2.1",
        "psycopg2-binary>=2.9.0",
        # Config & Validation
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        # Logging
        "loguru>=0.7.0",
        # AI & Vectors
        "google-generativeai>=0.8.0",
        "pinecone>=5.0.0",
        "numpy>=1.24.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "ruff>=0.1.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "learnpath=src.cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "Intended Audience :: Education",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Education",
    ],
    keywords="learning concept-graph llm education pipeline",
)
