# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

from abc import ABC, abstractmethod
from typing import Optional


class MaildropStore(ABC):
    """
    Durable record of accounts, their maildrops and maildrop locks.

    Messages are addressed by their 1-based position among all messages of
    the maildrop, marked or not, in creation order. Every method is a single
    point query or update and must be safe to call from several connection
    threads at once.
    """

    @abstractmethod
    def account_exists(self, username: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def password_matches(self, username: str, password: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def is_locked(self, username: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def set_locked(self, username: str, locked: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def try_lock(self, username: str) -> bool:
        """
        Lock the maildrop unless somebody else already holds it.

        Returns:
            True if the caller now owns the lock.
        """
        raise NotImplementedError

    @abstractmethod
    def unlock_all(self) -> None:
        """Release the locks of every maildrop (startup recovery)."""
        raise NotImplementedError

    @abstractmethod
    def message_count(self, username: str, include_marked: bool) -> int:
        raise NotImplementedError

    @abstractmethod
    def maildrop_size(self, username: str) -> int:
        """Size in octets of all messages not marked for deletion."""
        raise NotImplementedError

    @abstractmethod
    def message_size(self, username: str, pos: int) -> int:
        """Size in octets of the message, 0 if there is no such message."""
        raise NotImplementedError

    @abstractmethod
    def message_exists(self, username: str, pos: int) -> bool:
        """False for absent messages and for messages marked for deletion."""
        raise NotImplementedError

    @abstractmethod
    def mark_message(self, username: str, pos: int, marked: bool) -> None:
        raise NotImplementedError

    @abstractmethod
    def is_marked(self, username: str, pos: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def message_content(self, username: str, pos: int) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def message_uid(self, username: str, pos: int) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def unmark_all(self, username: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete_marked(self, username: str) -> int:
        """
        Physically remove the messages marked for deletion.

        Returns:
            The number of messages removed.
        """
        raise NotImplementedError

    @abstractmethod
    def add_account(self, username: str, password: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def add_message(self, username: str, content: str, uid: Optional[str] = None) -> str:
        """
        Append a message to the end of the maildrop.

        Returns:
            The unique id of the new message.
        """
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError
