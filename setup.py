#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
from pathlib import Path
from setuptools import find_packages, setup

HERE = Path(os.path.abspath(__file__)).resolve().parent
README = (HERE / "readme.md").read_text()

setup(
    name="dyncluster",
    version="0.1.0",
    description="A library that provisions, reshapes and tears down dynamic "
    "database clusters on pluggable runtimes.",
    long_description=README,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
    keywords="cluster, docker, orchestration",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages("src", exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "click>=8.1",
        # click colours Windows consoles through colorama
        "colorama; platform_system == 'Windows'",
        "cryptography>=44",
        "docker>=7.0",
        "requests>=2.32.2",
    ],
    extras_require={"test": ["pytest"]},
)
