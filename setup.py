#!/usr/bin/env python3
import sys
from setuptools import setup
from pathlib import Path

if sys.version_info < (3, 12):
	sys.exit("Error: run-all requires Python 3.12 or later")

README_PATH = Path(__file__).parent / "README.md"
with open(README_PATH, "r", encoding="utf-8") as f:
	long_description = f.read()

VERSION = "0.1.0"
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
	"License :: OSI Approved :: BSD License",
	"Operating System :: MacOS",
	"Operating System :: POSIX",
	"Operating System :: Unix",
	"Programming Language :: Python :: 3",
	"Programming Language :: Python :: 3.12",
	"Programming Language :: Python :: 3.13",
	"Programming Language :: Python :: 3 :: Only",
	"Topic :: Software Development :: Build Tools",
	"Topic :: Utilities",
	"Topic :: System :: Shells",
]

# Keywords for PyPI search
KEYWORDS = [
	"process",
	"command",
	"parallel",
	"concurrent",
	"output",
	"prefix",
	"color",
	"cli",
	"watch",
	"build",
]

setup(
	name="run-all",
	version=VERSION,
	description="Runs several commands at once and merges their prefixed, colored output",
	long_description=long_description,
	long_description_content_type="text/markdown",
	license="BSD-3-Clause",
	classifiers=CLASSIFIERS,
	keywords=" ".join(KEYWORDS),
	# Package discovery
	packages=[],  # No packages, just a single module
	package_dir={"": "src/py"},
	py_modules=["runall"],
	include_package_data=True,
	# Dependencies
	python_requires=">=3.12",
	install_requires=REQUIREMENTS,
	extras_require=EXTRAS_REQUIRE,
	# Entry points for command-line usage
	entry_points={
		"console_scripts": [
			"run-all=runall:cli",
		],
	},
	zip_safe=False,
	platforms=["unix", "linux", "osx"],
	data_files=[
		("share/doc/run-all", ["README.md"]),
	],
)
