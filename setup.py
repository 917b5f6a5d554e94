#!/usr/bin/env python3

import os
import re
from setuptools import setup


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


def find_version(source):
    version_file = read(source)
    version_match = re.search(r"^__VERSION__ = ['\"]([^'\"]*)['\"]", version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


NAME = "popdrop"

setup(
        version=find_version("popdrop/__init__.py"),
        name=NAME,
        description="POP3 server with a database backed maildrop store",
        author="Alexey Gladkov",
        author_email="gladkov.alexey@gmail.com",
        packages=["popdrop"],
        license="GPLv3+",
        keywords=["pop3", "mailbox", "maildrop"],
        install_requires=[
            "SQLAlchemy>=2.0",
            ],
        extras_require={
            "test": [
                "pytest",
                ],
            },
        python_requires=">=3.10",
        entry_points={
            "console_scripts": [
                "popdrop=popdrop.command:cmd"
                ],
            },
        )
