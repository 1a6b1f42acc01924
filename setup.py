#!/usr/bin/env python3
import os
import re

from setuptools import setup

HERE = os.path.dirname(os.path.abspath(__file__))

# Read the version without importing webhdfsreq, whose dependencies may not be installed yet.
with open(os.path.join(HERE, "webhdfsreq", "__init__.py")) as py:
    version_match = re.search(r'__version__ = "(.+?)"', py.read())
    assert version_match
    version = version_match.group(1)

with open(os.path.join(HERE, "README.rst")) as readme:
    long_description = readme.read()

setup(
    name="webhdfsreq",
    version=version,
    description="Low level WebHDFS request core: URL building, two step uploads, JSON decoding",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="MIT",
    packages=["webhdfsreq"],
    python_requires=">=3.8",
    install_requires=["requests", "simplejson"],
    extras_require={"tests": ["pytest"]},
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Topic :: System :: Filesystems",
    ],
)
