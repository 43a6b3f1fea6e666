"""labledger: append-only lab note ledger on SQLite."""

from setuptools import find_packages, setup

setup(
    name="labledger",
    version="0.3.0",
    description="Append-only, content-addressed lab note ledger with markdown sync",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.11",
    install_requires=[
        "click>=8.1",
        "PyYAML>=6.0",
        "rich>=13",
    ],
    extras_require={
        "test": ["pytest>=8"],
    },
    entry_points={
        "console_scripts": ["labledger=labledger.cli:cli"],
    },
)
