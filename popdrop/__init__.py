# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

import configparser
import logging
import os
import os.path
import re

from typing import Optional, Dict, Any


__VERSION__ = '1'

EX_SUCCESS = 0 # Successful exit status.
EX_FAILURE = 1 # Failing exit status.

CONFIG_FILES = ["~/.popdrop", "~/.config/popdrop/config"]

logger = logging.getLogger("popdrop")


class Error:
    def __init__(self, message: str):
        self.message = message


def parse_config(file: str) -> Dict[str, Any]:
    parser = configparser.ConfigParser()
    parser.SECTCRE = re.compile(r"\[ *(?P<header>[^]]+?) *\]")
    parser.read([file])

    config: Dict[str, Any] = {}
    for name in parser.sections():
        m = re.match(r'(?P<name>\S+)\s+"(?P<subname>[^"]+)"', name)
        if not m:
            config[name] = dict(parser.items(name))
            continue

        section =  m.group("name")
        subname = m.group("subname")

        if section not in config:
            config[section] = {}

        config[section][subname] = dict(parser.items(name))

    return config


def read_config(path: Optional[str] = None) -> Dict[str, Any] | Error:
    if path:
        path = os.path.expanduser(path)

        if not os.path.exists(path):
            return Error(f"config file `{path}' not found")

        logger.debug("picking config file `%s' ...", path)
        return parse_config(path)

    for config_file in CONFIG_FILES:
        config_file = os.path.expanduser(config_file)

        if not os.path.exists(config_file):
            continue

        logger.debug("picking config file `%s' ...", config_file)

        config = parse_config(config_file)
        logger.info("config has been read")
        return config

    # Every setting has a default, so running without a file is fine.
    logger.debug("no config file found, using defaults")
    return {}


def setup_logger(logger: logging.Logger, level: int, fmt: str) -> logging.Logger:
    formatter = logging.Formatter(fmt=fmt, datefmt="%H:%M:%S")

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(formatter)

    logger.setLevel(level)
    logger.addHandler(handler)

    return logger
