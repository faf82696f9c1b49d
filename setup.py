#!/usr/bin/env python3
import sys
from setuptools import setup
from pathlib import Path

if sys.version_info < (3, 12):
	sys.exit("Error: concurrently requires Python 3.12 or later")

README_PATH = Path(__file__).parent / "README.md"
with open(README_PATH, "r", encoding="utf-8") as f:
	long_description = f.read()

VERSION = "1.0.0"
REQUIREMENTS = []
EXTRAS_REQUIRE = {
	"dev": [
		"pytest>=6.0",
		"black>=22.0",
		"flake8>=4.0",
		"mypy>=0.950",
	],
	"test": [
		"pytest>=6.0",
		"pytest-cov>=2.0",
	],
}

# Classifiers for PyPI
CLASSIFIERS = [
	"Development Status :: 4 - Beta",
	"Environment :: Console",
	"Intended Audience :: Developers",
	"Intended Audience :: System Administrators",
	"License :: OSI Approved :: BSD License",
	"Operating System :: MacOS",
	"Operating System :: POSIX",
	"Operating System :: Unix",
	"Programming Language :: Python :: 3",
	"Programming Language :: Python :: 3.12",
	"Programming Language :: Python :: 3.13",
	"Programming Language :: Python :: 3 :: Only",
	"Topic :: Software Development :: Build Tools",
	"Topic :: System :: Systems Administration",
	"Topic :: Utilities",
	"Topic :: System :: Shells",
]

# Keywords for PyPI search
KEYWORDS = [
	"concurrently",
	"process",
	"command",
	"parallel",
	"concurrent",
	"shell",
	"cli",
	"signals",
	"automation",
	"build",
]

setup(
	name="concurrently-sh",
	version=VERSION,
	description="Runs shell commands concurrently, merging their labeled output into one stream",
	long_description=long_description,
	long_description_content_type="text/markdown",
	license="BSD-3-Clause",
	classifiers=CLASSIFIERS,
	keywords=" ".join(KEYWORDS),
	# Package discovery
	packages=[],  # No packages, just a single module
	package_dir={"": "src/py"},
	py_modules=["concurrently"],
	include_package_data=True,
	# Dependencies
	python_requires=">=3.12",
	install_requires=REQUIREMENTS,
	extras_require=EXTRAS_REQUIRE,
	# Entry points for command-line usage
	entry_points={
		"console_scripts": [
			"concurrently=concurrently:cli",
		],
	},
	zip_safe=False,
	platforms=["unix", "linux", "osx"],
)
