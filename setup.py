#!/usr/bin/env python
"""Setup script for mpra_analysis package."""

from setuptools import setup, find_packages

# Read the content of README.md for the long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="mpra_analysis",
    version="0.1.0",
    description="Activity and functional variant calling for massively parallel reporter assays",
    long_description=long_description,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
    python_requires=">=3.7",
    install_requires=[
        "numpy>=1.20.0",
        "pandas>=1.2.0",
        "scipy>=1.7.0",
        "statsmodels>=0.12.0",
        "click>=8.0.0",
    ],
    extras_require={
        "test": ["pytest>=6.0"],
    },
    entry_points={
        "console_scripts": [
            "mpra-analysis=mpra_analysis.mpra_cli:run_mpra_analysis",
        ],
    },
)
