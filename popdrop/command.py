#!/usr/bin/env python3
# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

import argparse
import sys
import logging

from typing import List, Optional

import popdrop

logger = popdrop.logger


def cmd_serve(cmdargs: argparse.Namespace) -> int:
    import popdrop.pop3
    return popdrop.pop3.main(cmdargs)


def cmd_useradd(cmdargs: argparse.Namespace) -> int:
    import popdrop.admin
    return popdrop.admin.main_useradd(cmdargs)


def cmd_deliver(cmdargs: argparse.Namespace) -> int:
    import popdrop.admin
    return popdrop.admin.main_deliver(cmdargs)


def cmd_unlock(cmdargs: argparse.Namespace) -> int:
    import popdrop.admin
    return popdrop.admin.main_unlock(cmdargs)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-v", "--verbose",
                        dest="verbose", action='count', default=0,
                        help="print a message for each action.")
    parser.add_argument('-q', '--quiet',
                        dest="quiet", action='store_true', default=False,
                        help='output critical information only.')
    parser.add_argument("-c", "--config",
                        dest="config", action="store", default=None, metavar="FILE",
                        help="read configuration from FILE instead of ~/.popdrop.")
    parser.add_argument("-V", "--version",
                        action='version',
                        help="show program's version number and exit.",
                        version=popdrop.__VERSION__)
    parser.add_argument("-h", "--help",
                        action='help',
                        help="show this help message and exit.")


def add_store_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-s", "--store",
                        dest="store", action="store", default=None, metavar="URL",
                        help="database URL of the maildrop store (default: sqlite:///popdrop.db).")


def setup_parser() -> argparse.ArgumentParser:
    epilog = "Report bugs to authors."

    description = """\
The utility is a POP3 server. Accounts, their maildrops and maildrop locks are
kept in a database. Clients authenticate with USER/PASS, list and retrieve
their messages and mark them for deletion; the deletion happens when the
client ends the session with QUIT.
"""
    parser = argparse.ArgumentParser(
            prog="popdrop",
            formatter_class=argparse.RawTextHelpFormatter,
            description=description,
            epilog=epilog,
            add_help=False,
            allow_abbrev=True)

    add_common_arguments(parser)

    subparsers = parser.add_subparsers(dest="subcmd", help="")

    # popdrop serve
    sp0_description = """\
runs the POP3 server. All maildrop locks are released on startup, they can
only be left over from a previous run.

"""
    sp0 = subparsers.add_parser("serve",
                                description=sp0_description,
                                help=sp0_description,
                                epilog=epilog,
                                add_help=False)
    sp0.set_defaults(func=cmd_serve)

    sp0.add_argument("-H", "--host",
                     dest="host", action="store", default=None, metavar="ADDR",
                     help="address to listen on (default: localhost).")
    sp0.add_argument("-p", "--port",
                     dest="port", action="store", type=int, default=None, metavar="PORT",
                     help="port to listen on, between 0 and 65535 (default: 110).")
    sp0.add_argument("-t", "--timeout",
                     dest="timeout", action="store", type=float, default=None, metavar="SECONDS",
                     help="inactivity timeout of a session (default: 600).")
    add_store_argument(sp0)
    add_common_arguments(sp0)

    # popdrop useradd
    sp1_description = """\
creates a new account with an empty maildrop.

"""
    sp1 = subparsers.add_parser("useradd",
                                description=sp1_description,
                                help=sp1_description,
                                epilog=epilog,
                                add_help=False)
    sp1.set_defaults(func=cmd_useradd)

    sp1.add_argument("--password",
                     dest="password", action="store", default=None, metavar="TEXT",
                     help="password of the account (asked for when omitted).")
    sp1.add_argument("user",
                     help="name of the account.")
    add_store_argument(sp1)
    add_common_arguments(sp1)

    # popdrop deliver
    sp2_description = """\
appends a message to the maildrop of the user. The message is read from FILE
or from stdin. The unique id of the message is printed.

"""
    sp2 = subparsers.add_parser("deliver",
                                description=sp2_description,
                                help=sp2_description,
                                epilog=epilog,
                                add_help=False)
    sp2.set_defaults(func=cmd_deliver)

    sp2.add_argument("--uid",
                     dest="uid", action="store", default=None, metavar="UID",
                     help="unique id to assign instead of a generated one.")
    sp2.add_argument("user",
                     help="name of the account.")
    sp2.add_argument("file",
                     nargs="?", default=None, metavar="FILE",
                     help="file with the message.")
    add_store_argument(sp2)
    add_common_arguments(sp2)

    # popdrop unlock
    sp3_description = """\
releases the lock of the maildrop of the user, or of all maildrops. A lock is
kept when a QUIT could not delete every marked message.

"""
    sp3 = subparsers.add_parser("unlock",
                                description=sp3_description,
                                help=sp3_description,
                                epilog=epilog,
                                add_help=False)
    sp3.set_defaults(func=cmd_unlock)

    sp3.add_argument("user",
                     nargs="?", default=None,
                     help="name of the account.")
    add_store_argument(sp3)
    add_common_arguments(sp3)

    return parser


def setup_logger(cmdargs: argparse.Namespace) -> None:
    match cmdargs.verbose:
        case 0:
            level = logging.WARNING
        case 1:
            level = logging.INFO
        case _:
            level = logging.DEBUG

    if cmdargs.quiet:
        level = logging.CRITICAL

    popdrop.setup_logger(logger, level=level, fmt="[%(asctime)s] %(message)s")


def cmd(argv: Optional[List[str]] = None) -> int:
    parser = setup_parser()
    cmdargs = parser.parse_args(argv)

    setup_logger(cmdargs)

    if 'func' not in cmdargs:
        parser.print_help()
        return popdrop.EX_FAILURE

    ret: int = cmdargs.func(cmdargs)

    return ret


if __name__ == '__main__':
    sys.exit(cmd())
