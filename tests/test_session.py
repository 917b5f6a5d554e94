"""End-to-end tests: a real server on an ephemeral port."""

import socket
import threading
import time

import pytest

from popdrop.pop3 import Pop3Server


class Client:
    def __init__(self, addr):
        self.sock = socket.create_connection(addr, timeout=5)
        self.rfile = self.sock.makefile("rb")

    def line(self) -> str:
        return self.rfile.readline().decode()

    def multiline(self) -> list:
        lines = []
        while True:
            line = self.line()
            if line == ".\r\n":
                return lines
            lines.append(line)

    def send(self, text: str) -> None:
        self.sock.sendall(f"{text}\r\n".encode())

    def command(self, text: str) -> str:
        self.send(text)
        return self.line()

    def close(self) -> None:
        self.rfile.close()
        self.sock.close()


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def start_server(store, session_timeout):
    server = Pop3Server(("127.0.0.1", 0), store, session_timeout)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


@pytest.fixture
def server(file_store):
    server = start_server(file_store, 5)
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def client(server):
    client = Client(server.server_address)
    assert client.line() == "+OK POP3 server ready\r\n"
    yield client
    client.close()


def login(client):
    assert client.command("USER bob").startswith("+OK")
    assert client.command("PASS correct") == "+OK user authorised PASS correct\r\n"


class TestConversation:

    def test_full_session(self, file_store, client):
        login(client)

        assert client.command("STAT") == "+OK 3 1500\r\n"

        assert client.command("LIST") == "+OK 3 (1500)\r\n"
        assert client.multiline() == ["1 500\r\n", "2 400\r\n", "3 600\r\n"]

        assert client.command("TOP 1 0").startswith("+OK")
        assert client.multiline() == [
            "From: alice@example.com\r\n",
            "To: bob@example.com\r\n",
            "Subject: first\r\n",
            "\r\n",
        ]

        assert client.command("DELE 2") == "+OK message marked as deleted DELE 2\r\n"
        assert client.command("QUIT") == "+OK 1 messages deleted QUIT\r\n"

        # The server closes the connection after QUIT.
        assert client.line() == ""

        assert not file_store.is_locked("bob")
        assert file_store.message_count("bob", True) == 2

    def test_lowercase_and_bare_lf(self, client):
        client.sock.sendall(b"user bob\n")
        assert client.line() == "+OK found user account user bob\r\n"

    def test_quit_in_authorization(self, file_store, client):
        assert client.command("QUIT") == "+OK quitting QUIT\r\n"
        assert client.line() == ""
        assert not file_store.is_locked("bob")

    def test_second_session_sees_lock(self, file_store, server, client):
        login(client)

        other = Client(server.server_address)
        try:
            other.line()
            assert other.command("USER bob") == "-ERR the maildrop is currently locked USER bob\r\n"
        finally:
            other.close()

        assert client.command("QUIT").startswith("+OK")
        assert client.line() == ""

        other = Client(server.server_address)
        try:
            other.line()
            assert other.command("USER bob") == "+OK found user account USER bob\r\n"
        finally:
            other.close()

    def test_sessions_are_independent(self, server, client):
        other = Client(server.server_address)
        try:
            other.line()
            assert other.command("USER alice").startswith("+OK")
            assert other.command("PASS open sesame").startswith("+OK")

            login(client)

            assert other.command("STAT") == "+OK 0 0\r\n"
            assert client.command("STAT") == "+OK 3 1500\r\n"
        finally:
            other.close()


class TestCleanup:

    def test_disconnect_restores_maildrop(self, file_store, client):
        login(client)
        assert client.command("DELE 1").startswith("+OK")
        assert client.command("DELE 3").startswith("+OK")

        client.close()

        assert wait_for(lambda: not file_store.is_locked("bob"))
        assert not file_store.is_marked("bob", 1)
        assert not file_store.is_marked("bob", 3)
        assert file_store.message_count("bob", True) == 3

    def test_disconnect_before_authentication(self, file_store, client):
        assert client.command("USER bob").startswith("+OK")
        file_store.set_locked("alice", True)

        client.close()
        time.sleep(0.2)

        assert file_store.is_locked("alice")
        assert not file_store.is_locked("bob")

    def test_timeout_restores_maildrop(self, file_store):
        server = start_server(file_store, 0.5)
        client = Client(server.server_address)
        try:
            client.line()
            login(client)
            assert client.command("DELE 2").startswith("+OK")
            assert file_store.is_locked("bob")

            # Nothing is sent; the server gives up and closes the connection.
            assert client.line() == ""

            assert wait_for(lambda: not file_store.is_locked("bob"))
            assert not file_store.is_marked("bob", 2)
        finally:
            client.close()
            server.shutdown()
            server.server_close()
