################################################################################
# DOCKVAULT
#
# @file:        setup.py
# @module:      setup
# @description: Setuptools configuration and CLI packaging for dockvault.
# @version:     1.0.0
#
# ------------------------------------------------------------------------------
# MIT License: see LICENSE or https://opensource.org/licenses/MIT
################################################################################

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description (optional)
readme_file = Path(__file__).parent / "README.md"
long_description = ""
if readme_file.exists():
    long_description = readme_file.read_text(encoding="utf-8")

setup(
    name="dockvault",
    version="1.0.0",
    description="Consistent backup, restore and disaster recovery for Docker hosts",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",

    packages=find_packages(exclude=("tests*", "docs*", "examples*")),
    include_package_data=True,
    zip_safe=False,

    python_requires=">=3.10",

    install_requires=[
        "psutil>=5.9.0",
        "typer>=0.12.0",
        "rich>=13.0.0",
        "pydantic>=2.0.0",
        "docker>=7.0.0",
        "requests>=2.28.0",
        "httpx>=0.25.0",
    ],

    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
            "mypy>=0.950",
        ],
    },

    entry_points={
        "console_scripts": [
            "dockvault=dockvault.__main__:cli_main",
        ],
    },

    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Archiving :: Backup",
        "Topic :: System :: Systems Administration",
        "Topic :: Utilities",
    ],

    keywords="docker backup restore disaster-recovery rsync s3 minio",
)
