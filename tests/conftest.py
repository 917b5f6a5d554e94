"""Shared fixtures: a maildrop store seeded with two accounts."""

from typing import List

import pytest

import popdrop.sqlstore
from popdrop.interpreter import CommandInterpreter
from popdrop.sqlstore import SqlMaildropStore


BOB_PASSWORD = "correct"
ALICE_PASSWORD = "open sesame"


def build_message(subject: str, lines: List[str], size: int) -> str:
    """Build a message of exactly `size` octets by padding its last line."""
    text = (
        "From: alice@example.com\n"
        "To: bob@example.com\n"
        f"Subject: {subject}\n"
        "\n"
    ) + "\n".join(lines)

    pad = size - len(text.encode())
    assert pad >= 0
    return text + "x" * pad


BOB_MESSAGES = [
    (build_message("first", ["line one", "line two", "line three"], 500), "uid-first"),
    (build_message("second", ["hello"], 400), "uid-second"),
    (build_message("third", ["a", "b"], 600), "uid-third"),
]


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch):
    """Keep PBKDF2 cheap in tests"""
    monkeypatch.setattr(popdrop.sqlstore, "PBKDF2_ROUNDS", 1000)


def seed(store: SqlMaildropStore) -> SqlMaildropStore:
    store.add_account("bob", BOB_PASSWORD)
    for content, uid in BOB_MESSAGES:
        store.add_message("bob", content, uid=uid)

    store.add_account("alice", ALICE_PASSWORD)
    return store


@pytest.fixture
def store():
    """In-memory SQLite store with bob (3 messages, 1500 octets) and alice (empty)"""
    store = seed(SqlMaildropStore("sqlite:///:memory:"))
    yield store
    store.close()


@pytest.fixture
def file_store(tmp_path):
    """File-backed store, safe to use from several threads"""
    store = seed(SqlMaildropStore(f"sqlite:///{tmp_path}/maildrop.db"))
    yield store
    store.close()


@pytest.fixture
def interpreter(store) -> CommandInterpreter:
    return CommandInterpreter(store)


@pytest.fixture
def bob(interpreter) -> CommandInterpreter:
    """Interpreter already in the TRANSACTION state for bob"""
    assert interpreter.handle_input("USER bob").ok
    assert interpreter.handle_input(f"PASS {BOB_PASSWORD}").ok
    return interpreter
