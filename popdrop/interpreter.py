# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

import enum
import re

from typing import Callable, Optional, Dict, List, Set

import popdrop
from popdrop.store import MaildropStore

CRLF = '\r\n'

OK = "+OK"
ERR = "-ERR"

# Message numbers and line counts are 32-bit signed integers.
INT_MIN = -2**31
INT_MAX = 2**31 - 1

logger = popdrop.logger


class State(enum.Enum):
    AUTHORIZATION = "authorization"
    TRANSACTION = "transaction"
    UPDATE = "update"


class Reply(enum.Enum):
    INVALID_IN_STATE        = (ERR, "command invalid in the current state")
    INVALID_ARG_TYPE        = (ERR, "invalid argument type")
    TOO_MANY_ARGS           = (ERR, "too many command arguments")
    TOO_FEW_ARGS            = (ERR, "too few command arguments")
    INCORRECT_NUM_ARGS      = (ERR, "incorrect number of arguments")
    INVALID_COMMAND         = (ERR, "invalid command")
    USER_OK                 = (OK,  "found user account")
    USER_LOCKED             = (ERR, "the maildrop is currently locked")
    USER_NOT_FOUND          = (ERR, "user not found")
    USER_COMMAND_NOT_SENT   = (ERR, "USER command not sent")
    PASSWORD_OK             = (OK,  "user authorised")
    PASSWORD_INCORRECT      = (ERR, "password incorrect")
    QUIT_OK                 = (OK,  "quitting")
    QUIT_ERROR              = (ERR, "some messages were not deleted")
    NOOP_OK                 = (OK,  "no operation")
    MESSAGE_NOT_FOUND       = (ERR, "message not found")
    MESSAGE_ALREADY_DELETED = (ERR, "message already deleted")
    MESSAGE_MARKED          = (OK,  "message marked as deleted")
    RESET_OK                = (OK,  "deleted messages restored")
    INVALID_ARG_VAL         = (ERR, "invalid argument value")

    def __init__(self, status: str, text: str):
        self.status = status
        self.text = text


class Pop3Response:
    def __init__(self, status: str, message: str, lines: Optional[List[str]] = None):
        self.status = status
        self.message = message
        self.lines = lines

    @property
    def ok(self) -> bool:
        return self.status == OK

    def __str__(self) -> str:
        parts = [self.status]

        if self.message:
            parts.extend([" ", self.message])

        parts.append(CRLF)

        if self.lines is not None:
            for line in self.lines:
                parts.extend([line, CRLF])
            parts.extend([".", CRLF])

        return "".join(parts)


class Command:
    def __init__(self, line: str):
        self.line = line

        if " " in line:
            (verb, self.rest) = line.split(" ", 1)
            self.args = self.rest.split(" ")
            # "TOP 1 2 " still has two arguments.
            while self.args and not self.args[-1]:
                self.args.pop()
        else:
            (verb, self.rest) = (line, None)
            self.args = []

        self.name = verb.upper()

    def reply(self, kind: Reply) -> Pop3Response:
        # The request is echoed after the fixed text of every status reply.
        return Pop3Response(kind.status, f"{kind.text} {self.line}")


def parse_number(value: str) -> Optional[int]:
    if not re.fullmatch(r'[+-]?[0-9]+', value):
        return None

    number = int(value)
    if number < INT_MIN or number > INT_MAX:
        return None

    return number


def split_message(content: str) -> tuple[List[str], List[str]]:
    parts = re.split(r'\r?\n\r?\n', content, maxsplit=1)

    header = parts[0].splitlines()
    body = parts[1].splitlines() if len(parts) > 1 else []

    return header, body


class Pop3CMD:
    handler: Callable[["CommandInterpreter", Command], Pop3Response]

    def __init__(self, handler: Callable[["CommandInterpreter", Command], Pop3Response], states: Set[State]):
        self.handler = handler
        self.states = states


class CommandInterpreter:
    """
    POP3 command interpreter of a single connection.

    Every call of handle_input() consumes one request line and produces
    exactly one response. Checks are made in a fixed order: state, argument
    count, argument type, and only then the maildrop itself.
    """

    def __init__(self, store: MaildropStore):
        self.store = store
        self.state = State.AUTHORIZATION
        self.username = ""
        self.finished = False

    def handle_input(self, line: str) -> Pop3Response:
        cmd = Command(line.rstrip("\r\n"))

        if cmd.name not in commands:
            return cmd.reply(Reply.INVALID_COMMAND)

        if self.state not in commands[cmd.name].states:
            return cmd.reply(Reply.INVALID_IN_STATE)

        return commands[cmd.name].handler(self, cmd)

    def cleanup(self) -> None:
        """
        Compensate for a session which ended without QUIT.

        Marks are dropped and the maildrop lock is released. Nothing is done
        unless the session is authenticated and has not reached UPDATE.
        """
        if self.state != State.TRANSACTION:
            return

        logger.info("restoring the maildrop of `%s'", self.username)

        self.store.unmark_all(self.username)
        self.store.set_locked(self.username, False)

    def _message_number(self, cmd: Command, arg: str) -> int | Pop3Response:
        msg = parse_number(arg)
        if msg is None:
            return cmd.reply(Reply.INVALID_ARG_TYPE)
        return msg

    def command_user(self, cmd: Command) -> Pop3Response:
        if len(cmd.args) != 1:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        name = cmd.args[0]

        if not self.store.account_exists(name):
            return cmd.reply(Reply.USER_NOT_FOUND)

        if self.store.is_locked(name):
            return cmd.reply(Reply.USER_LOCKED)

        self.username = name
        return cmd.reply(Reply.USER_OK)

    def command_pass(self, cmd: Command) -> Pop3Response:
        if cmd.rest is None:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        if not self.username:
            return cmd.reply(Reply.USER_COMMAND_NOT_SENT)

        # Passwords may contain spaces, the whole remainder is the password.
        if not self.store.password_matches(self.username, cmd.rest):
            return cmd.reply(Reply.PASSWORD_INCORRECT)

        # Another session may have authenticated since our USER.
        if not self.store.try_lock(self.username):
            return cmd.reply(Reply.USER_LOCKED)

        logger.info("maildrop `%s' locked", self.username)

        self.state = State.TRANSACTION
        return cmd.reply(Reply.PASSWORD_OK)

    def command_quit(self, cmd: Command) -> Pop3Response:
        if cmd.args:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        self.finished = True

        if self.state == State.AUTHORIZATION:
            return cmd.reply(Reply.QUIT_OK)

        self.state = State.UPDATE
        return self.finalize(cmd)

    def finalize(self, cmd: Command) -> Pop3Response:
        before = self.store.message_count(self.username, True)
        deleted = self.store.delete_marked(self.username)
        expected = before - self.store.message_count(self.username, True)

        if deleted != expected:
            # The lock stays held and has to be released by the operator.
            logger.critical("maildrop `%s': %d messages removed, expected %d",
                            self.username, deleted, expected)
            return cmd.reply(Reply.QUIT_ERROR)

        self.store.set_locked(self.username, False)

        logger.info("maildrop `%s' unlocked, %d messages deleted", self.username, deleted)

        return Pop3Response(OK, f"{deleted} messages deleted {cmd.line}")

    def command_noop(self, cmd: Command) -> Pop3Response:
        if cmd.args:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)
        return cmd.reply(Reply.NOOP_OK)

    def command_stat(self, cmd: Command) -> Pop3Response:
        if cmd.args:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        count = self.store.message_count(self.username, False)
        size = self.store.maildrop_size(self.username)

        return Pop3Response(OK, f"{count} {size}")

    def _scan_listing(self, getter: Callable[[str, int], object]) -> Pop3Response:
        count = self.store.message_count(self.username, False)
        size = self.store.maildrop_size(self.username)

        lines = []
        for msg in range(1, self.store.message_count(self.username, True) + 1):
            if not self.store.is_marked(self.username, msg):
                lines.append(f"{msg} {getter(self.username, msg)}")

        return Pop3Response(OK, f"{count} ({size})", lines)

    def _scan_one(self, cmd: Command, getter: Callable[[str, int], object]) -> Pop3Response:
        msg = self._message_number(cmd, cmd.args[0])
        if isinstance(msg, Pop3Response):
            return msg

        if not self.store.message_exists(self.username, msg):
            return cmd.reply(Reply.MESSAGE_NOT_FOUND)

        return Pop3Response(OK, f"{msg} {getter(self.username, msg)}")

    def command_list(self, cmd: Command) -> Pop3Response:
        if len(cmd.args) > 1:
            return cmd.reply(Reply.TOO_MANY_ARGS)

        if not cmd.args:
            return self._scan_listing(self.store.message_size)

        return self._scan_one(cmd, self.store.message_size)

    def command_uidl(self, cmd: Command) -> Pop3Response:
        if len(cmd.args) > 1:
            return cmd.reply(Reply.TOO_MANY_ARGS)

        if not cmd.args:
            return self._scan_listing(self.store.message_uid)

        return self._scan_one(cmd, self.store.message_uid)

    def _check_message(self, cmd: Command, msg: int) -> Optional[Pop3Response]:
        if self.store.is_marked(self.username, msg):
            return cmd.reply(Reply.MESSAGE_ALREADY_DELETED)

        if not self.store.message_exists(self.username, msg):
            return cmd.reply(Reply.MESSAGE_NOT_FOUND)

        return None

    def command_retr(self, cmd: Command) -> Pop3Response:
        if len(cmd.args) != 1:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        msg = self._message_number(cmd, cmd.args[0])
        if isinstance(msg, Pop3Response):
            return msg

        err = self._check_message(cmd, msg)
        if err:
            return err

        size = self.store.message_size(self.username, msg)
        content = self.store.message_content(self.username, msg) or ""

        # Content goes out as stored, lines starting with "." are not stuffed.
        return Pop3Response(OK, f"{size} octets", content.splitlines())

    def command_dele(self, cmd: Command) -> Pop3Response:
        if len(cmd.args) != 1:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        msg = self._message_number(cmd, cmd.args[0])
        if isinstance(msg, Pop3Response):
            return msg

        err = self._check_message(cmd, msg)
        if err:
            return err

        self.store.mark_message(self.username, msg, True)
        return cmd.reply(Reply.MESSAGE_MARKED)

    def command_rset(self, cmd: Command) -> Pop3Response:
        if cmd.args:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        self.store.unmark_all(self.username)
        return cmd.reply(Reply.RESET_OK)

    def command_top(self, cmd: Command) -> Pop3Response:
        if not cmd.args:
            return cmd.reply(Reply.TOO_FEW_ARGS)

        if len(cmd.args) != 2:
            return cmd.reply(Reply.INCORRECT_NUM_ARGS)

        msg = parse_number(cmd.args[0])
        nlines = parse_number(cmd.args[1])

        if msg is None or nlines is None:
            return cmd.reply(Reply.INVALID_ARG_TYPE)

        err = self._check_message(cmd, msg)
        if err:
            return err

        if nlines < 0:
            return cmd.reply(Reply.INVALID_ARG_VAL)

        content = self.store.message_content(self.username, msg)
        if not content:
            return Pop3Response(OK, "", [])

        (header, body) = split_message(content)

        # RFC 1939: the header, the blank line separating it from the body,
        # then at most nlines lines of the body.
        return Pop3Response(OK, "", header + [""] + body[:nlines])


TRANSACTION_ONLY = {State.TRANSACTION}

commands: Dict[str, Pop3CMD] = {
        "USER" : Pop3CMD(CommandInterpreter.command_user , states={State.AUTHORIZATION}                    ),
        "PASS" : Pop3CMD(CommandInterpreter.command_pass , states={State.AUTHORIZATION}                    ),
        "QUIT" : Pop3CMD(CommandInterpreter.command_quit , states={State.AUTHORIZATION, State.TRANSACTION} ),
        "STAT" : Pop3CMD(CommandInterpreter.command_stat , states=TRANSACTION_ONLY                         ),
        "LIST" : Pop3CMD(CommandInterpreter.command_list , states=TRANSACTION_ONLY                         ),
        "RETR" : Pop3CMD(CommandInterpreter.command_retr , states=TRANSACTION_ONLY                         ),
        "DELE" : Pop3CMD(CommandInterpreter.command_dele , states=TRANSACTION_ONLY                         ),
        "NOOP" : Pop3CMD(CommandInterpreter.command_noop , states=TRANSACTION_ONLY                         ),
        "RSET" : Pop3CMD(CommandInterpreter.command_rset , states=TRANSACTION_ONLY                         ),
        "TOP"  : Pop3CMD(CommandInterpreter.command_top  , states=TRANSACTION_ONLY                         ),
        "UIDL" : Pop3CMD(CommandInterpreter.command_uidl , states=TRANSACTION_ONLY                         ),
        }
