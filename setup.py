#!/usr/bin/env python3
import sys
from setuptools import setup
from pathlib import Path

if sys.version_info < (3, 11):
	sys.exit("Error: shunt requires Python 3.11 or later")

README_PATH = Path(__file__).parent / "README.md"
with open(README_PATH, "r", encoding="utf-8") as f:
	long_description = f.read()

VERSION = "0.1.0"
REQUIREMENTS = [
	"json5>=0.9",
]
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
	"Topic :: System :: Monitoring",
	"Topic :: Utilities",
]

# Keywords for PyPI search
KEYWORDS = [
	"supervisor",
	"process",
	"command",
	"parallel",
	"concurrent",
	"pty",
	"cli",
	"development",
]

setup(
	name="shunt-sh",
	version=VERSION,
	description="Runs several long-lived commands side by side with a prefixed, colored output",
	long_description=long_description,
	long_description_content_type="text/markdown",
	license="BSD-3-Clause",
	classifiers=CLASSIFIERS,
	keywords=" ".join(KEYWORDS),
	# Package discovery
	packages=[],  # No packages, just modules
	package_dir={"": "src/py"},
	py_modules=["shunt", "shuntconf"],
	include_package_data=True,
	# Dependencies
	python_requires=">=3.11",
	install_requires=REQUIREMENTS,
	extras_require=EXTRAS_REQUIRE,
	# Entry points for command-line usage
	entry_points={
		"console_scripts": [
			"shunt=shunt:cli",
		],
	},
	zip_safe=False,
	platforms=["unix", "linux", "osx"],
)
