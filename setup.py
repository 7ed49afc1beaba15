#!/usr/bin/env python3
"""
Setup script for Sundial - time-series analytics execution engine.
"""

from pathlib import Path
from setuptools import setup, find_packages

readme = Path(__file__).parent / "README.md"
long_description = readme.read_text(encoding="utf-8") if readme.exists() else ""

setup(
    name="sundial",
    version="0.1.0",
    description="Execution engine for a time-series analytics DSL: windows, rolling aggregates, trends and forecasts",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="Apache-2.0",

    packages=find_packages(include=["sundial", "sundial.*"]),
    include_package_data=True,

    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development :: Libraries :: Python Modules",
        "Topic :: Scientific/Engineering :: Information Analysis",
    ],

    python_requires=">=3.8",

    install_requires=[
        "rich>=12.0.0",
        "typer>=0.7.0",
        "orjson>=3.9.0",
        "numpy>=1.21.0",
        "psutil>=5.9.0",
        "prometheus-client>=0.19.0",
    ],

    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-mock>=3.12.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.12.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
    },

    # Entry points for command-line scripts
    entry_points={
        "console_scripts": [
            "sundial = sundial.cli:main",
        ],
    },

    zip_safe=False,
)
