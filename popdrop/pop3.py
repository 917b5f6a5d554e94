# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

import argparse
import socket
import socketserver

from typing import Optional, Dict, Any

import sqlalchemy.exc

import popdrop
from popdrop.interpreter import CommandInterpreter, Pop3Response, OK
from popdrop.sqlstore import SqlMaildropStore
from popdrop.store import MaildropStore

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 110
DEFAULT_TIMEOUT = 600
DEFAULT_STORE = "sqlite:///popdrop.db"

logger = popdrop.logger


class Settings:
    def __init__(self, host: str, port: int, timeout: float, store: str):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.store = store


def get_store_url(config: Dict[str, Any], cmdargs: argparse.Namespace) -> str:
    url: str = getattr(cmdargs, "store", None) or config.get("store", {}).get("url", DEFAULT_STORE)
    return url


def get_settings(config: Dict[str, Any], cmdargs: argparse.Namespace) -> Settings | popdrop.Error:
    pop3 = config.get("pop3", {})

    host = getattr(cmdargs, "host", None) or pop3.get("host", DEFAULT_HOST)
    store = get_store_url(config, cmdargs)

    port = getattr(cmdargs, "port", None)
    if port is None:
        port = pop3.get("port", DEFAULT_PORT)

    timeout = getattr(cmdargs, "timeout", None)
    if timeout is None:
        timeout = pop3.get("timeout", DEFAULT_TIMEOUT)

    try:
        port = int(port)
    except ValueError:
        return popdrop.Error(f"invalid port: {port}")

    if port < 0 or port > 65535:
        return popdrop.Error(f"invalid port {port}: must be between 0 and 65535 inclusive")

    try:
        timeout = float(timeout)
    except ValueError:
        return popdrop.Error(f"invalid timeout: {timeout}")

    if timeout <= 0:
        return popdrop.Error(f"invalid timeout {timeout:g}: must be greater than zero")

    return Settings(host, port, timeout, store)


class Pop3Handler(socketserver.StreamRequestHandler):
    """
    One POP3 session.

    Lines are read until QUIT succeeds, the peer goes away or nothing arrives
    for the configured inactivity timeout. In the last two cases the maildrop
    is restored: marks are dropped and the lock is released.
    """

    def setup(self) -> None:
        self.timeout = getattr(self.server, "session_timeout")
        super().setup()

    def send(self, ans: Pop3Response | str) -> None:
        msg = str(ans)
        logger.debug("SEND: %s: %s", self.client_address, msg.encode())
        self.wfile.write(msg.encode())

    def recv_line(self) -> Optional[str]:
        line = self.rfile.readline()
        if not line:
            return None

        text = line.decode(errors="replace")

        if text[:4].upper() == "PASS":
            logger.debug("RECV: %s: PASS ********", self.client_address)
        else:
            logger.debug("RECV: %s: %s", self.client_address, line)

        return text

    def converse(self, interpreter: CommandInterpreter) -> None:
        self.send(Pop3Response(OK, "POP3 server ready"))

        while not interpreter.finished:
            line = self.recv_line()

            if line is None:
                logger.info("%s: connection closed by peer", self.client_address)
                break

            self.send(interpreter.handle_input(line))

    def handle(self) -> None:
        store: MaildropStore = getattr(self.server, "store")
        interpreter = CommandInterpreter(store)

        logger.info("%s: new connection", self.client_address)

        try:
            self.converse(interpreter)

        except TimeoutError:
            logger.info("%s: user timed out", self.client_address)

        except OSError as e:
            logger.info("%s: connection error: %s", self.client_address, e)

        finally:
            interpreter.cleanup()
            logger.info("%s: disconnected", self.client_address)


class Pop3Server(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, addr: Any, store: MaildropStore, session_timeout: float,
                 handler: Any = Pop3Handler):
        self.address_family = socket.AF_INET
        self.socket_type = socket.SOCK_STREAM
        self.store = store
        self.session_timeout = session_timeout
        super().__init__(addr, handler)

    def handle_error(self, request: Any, client_address: Any) -> None:
        # One broken session must not take the others down.
        logger.exception("%s: session failed", client_address)


def main(cmdargs: argparse.Namespace) -> int:
    config = popdrop.read_config(cmdargs.config)

    if isinstance(config, popdrop.Error):
        logger.critical("%s", config.message)
        return popdrop.EX_FAILURE

    settings = get_settings(config, cmdargs)

    if isinstance(settings, popdrop.Error):
        logger.critical("%s", settings.message)
        return popdrop.EX_FAILURE

    try:
        store = SqlMaildropStore(settings.store)
        # Locks left behind by a crashed server have no owner anymore.
        store.unlock_all()
    except sqlalchemy.exc.SQLAlchemyError as e:
        logger.critical("unable to open the store: %s", e)
        return popdrop.EX_FAILURE

    saddr = (settings.host, settings.port)

    try:
        with Pop3Server(saddr, store, settings.timeout) as server:
            logger.info("listening on %s", server.server_address)
            server.serve_forever()
    except KeyboardInterrupt:
        pass
    except OSError as e:
        logger.critical("unable to listen on %s: %s", saddr, e)
        return popdrop.EX_FAILURE
    finally:
        store.close()

    return popdrop.EX_SUCCESS
