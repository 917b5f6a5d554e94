# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

import argparse
import getpass
import sys

import sqlalchemy.exc

import popdrop
import popdrop.pop3
from popdrop.sqlstore import SqlMaildropStore

logger = popdrop.logger


def open_store(cmdargs: argparse.Namespace) -> SqlMaildropStore | popdrop.Error:
    config = popdrop.read_config(cmdargs.config)

    if isinstance(config, popdrop.Error):
        return config

    url = popdrop.pop3.get_store_url(config, cmdargs)

    try:
        return SqlMaildropStore(url)
    except sqlalchemy.exc.SQLAlchemyError as e:
        return popdrop.Error(f"unable to open the store: {e}")


def main_useradd(cmdargs: argparse.Namespace) -> int:
    store = open_store(cmdargs)

    if isinstance(store, popdrop.Error):
        logger.critical("%s", store.message)
        return popdrop.EX_FAILURE

    try:
        if " " in cmdargs.user or not cmdargs.user:
            logger.critical("user name must be a single word: `%s'", cmdargs.user)
            return popdrop.EX_FAILURE

        if store.account_exists(cmdargs.user):
            logger.critical("user `%s' already exists", cmdargs.user)
            return popdrop.EX_FAILURE

        password = cmdargs.password
        if password is None:
            password = getpass.getpass(f"Password for {cmdargs.user}: ")

        store.add_account(cmdargs.user, password)
        logger.info("user `%s' created", cmdargs.user)
    finally:
        store.close()

    return popdrop.EX_SUCCESS


def main_deliver(cmdargs: argparse.Namespace) -> int:
    store = open_store(cmdargs)

    if isinstance(store, popdrop.Error):
        logger.critical("%s", store.message)
        return popdrop.EX_FAILURE

    try:
        if not store.account_exists(cmdargs.user):
            logger.critical("user `%s' not found", cmdargs.user)
            return popdrop.EX_FAILURE

        if cmdargs.file:
            try:
                with open(cmdargs.file, "r", encoding="utf-8", errors="replace") as fd:
                    content = fd.read()
            except OSError as e:
                logger.critical("unable to read message: %s", e)
                return popdrop.EX_FAILURE
        else:
            content = sys.stdin.read()

        uid = store.add_message(cmdargs.user, content, uid=cmdargs.uid)
        logger.info("message %s delivered to `%s'", uid, cmdargs.user)
        print(uid)
    finally:
        store.close()

    return popdrop.EX_SUCCESS


def main_unlock(cmdargs: argparse.Namespace) -> int:
    store = open_store(cmdargs)

    if isinstance(store, popdrop.Error):
        logger.critical("%s", store.message)
        return popdrop.EX_FAILURE

    try:
        if not cmdargs.user:
            store.unlock_all()
            return popdrop.EX_SUCCESS

        if not store.account_exists(cmdargs.user):
            logger.critical("user `%s' not found", cmdargs.user)
            return popdrop.EX_FAILURE

        # Used after a QUIT which failed to delete every marked message.
        store.set_locked(cmdargs.user, False)
        logger.info("maildrop `%s' unlocked", cmdargs.user)
    finally:
        store.close()

    return popdrop.EX_SUCCESS
