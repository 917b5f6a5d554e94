# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2023  Alexey Gladkov <gladkov.alexey@gmail.com>

__author__ = 'Alexey Gladkov <gladkov.alexey@gmail.com>'

import hashlib
import hmac
import os
import uuid

from typing import Optional, List, Any

from sqlalchemy import (Boolean, ForeignKey, Integer, String, Text,
                        create_engine, delete, func, select, update)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import (DeclarativeBase, Mapped, Session, mapped_column,
                            relationship, sessionmaker)
from sqlalchemy.pool import StaticPool

import popdrop
from popdrop.store import MaildropStore

logger = popdrop.logger

PBKDF2_ROUNDS = 100000


class Base(DeclarativeBase):
    pass


class AccountModel(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    password: Mapped[str] = mapped_column(String(255), nullable=False)
    locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    messages: Mapped[List["MessageModel"]] = relationship(back_populates="account",
                                                          cascade="all, delete-orphan",
                                                          order_by="MessageModel.id")

    def __repr__(self) -> str:
        return f"<AccountModel(id={self.id}, username={self.username}, locked={self.locked})>"


class MessageModel(Base):
    __tablename__ = "messages"

    # The primary key only grows, so ordering by it gives stable positions.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id", ondelete="CASCADE"),
                                            nullable=False, index=True)
    uid: Mapped[str] = mapped_column(String(70), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    marked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    account: Mapped[AccountModel] = relationship(back_populates="messages")

    def __repr__(self) -> str:
        return f"<MessageModel(id={self.id}, uid={self.uid}, size={self.size}, marked={self.marked})>"


def hash_password(password: str, salt: Optional[bytes] = None) -> str:
    if salt is None:
        salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt, PBKDF2_ROUNDS)
    return f"pbkdf2_sha256${PBKDF2_ROUNDS}${salt.hex()}${digest.hex()}"


def check_password(password: str, stored: str) -> bool:
    try:
        (_, rounds, salt, digest) = stored.split("$")
        hexdigest = hashlib.pbkdf2_hmac("sha256", password.encode(),
                                        bytes.fromhex(salt), int(rounds)).hex()
    except ValueError:
        logger.critical("malformed password hash in the store")
        return False

    return hmac.compare_digest(hexdigest, digest)


def create_store_engine(url: str, echo: bool = False) -> Engine:
    options: dict[str, Any] = {}

    u = make_url(url)
    if u.get_backend_name() == "sqlite" and u.database in (None, "", ":memory:"):
        # All connection threads must see the same in-memory database.
        options["connect_args"] = {"check_same_thread": False}
        options["poolclass"] = StaticPool

    return create_engine(url, echo=echo, **options)


class SqlMaildropStore(MaildropStore):
    """
    MaildropStore on top of a relational database.

    Each call runs in its own short transaction, so the store can be shared by
    all connection threads. Lock acquisition is a conditional UPDATE and is
    therefore atomic on every backend.
    """

    def __init__(self, url: str, echo: bool = False):
        logger.debug("connecting to the store `%s' ...", url)

        self.engine = create_store_engine(url, echo=echo)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine)

        logger.info("connected to the store")

    def _account_ids(self, username: str) -> Any:
        return select(AccountModel.id).where(AccountModel.username == username).scalar_subquery()

    def _message(self, session: Session, username: str, pos: int) -> Optional[MessageModel]:
        if pos < 1:
            return None

        stmt = (select(MessageModel)
                .join(AccountModel)
                .where(AccountModel.username == username)
                .order_by(MessageModel.id)
                .offset(pos - 1)
                .limit(1))

        return session.scalars(stmt).first()

    def _account(self, session: Session, username: str) -> Optional[AccountModel]:
        return session.scalars(select(AccountModel)
                               .where(AccountModel.username == username)).first()

    def account_exists(self, username: str) -> bool:
        with self.session_factory() as session:
            return self._account(session, username) is not None

    def password_matches(self, username: str, password: str) -> bool:
        with self.session_factory() as session:
            account = self._account(session, username)
            if account is None:
                return False
            return check_password(password, account.password)

    def is_locked(self, username: str) -> bool:
        with self.session_factory() as session:
            account = self._account(session, username)
            return account is not None and account.locked

    def set_locked(self, username: str, locked: bool) -> None:
        with self.session_factory.begin() as session:
            session.execute(update(AccountModel)
                            .where(AccountModel.username == username)
                            .values(locked=locked)
                            .execution_options(synchronize_session=False))

    def try_lock(self, username: str) -> bool:
        with self.session_factory.begin() as session:
            result = session.execute(update(AccountModel)
                                     .where(AccountModel.username == username,
                                            AccountModel.locked.is_(False))
                                     .values(locked=True)
                                     .execution_options(synchronize_session=False))
            return result.rowcount == 1

    def unlock_all(self) -> None:
        with self.session_factory.begin() as session:
            result = session.execute(update(AccountModel)
                                     .where(AccountModel.locked.is_(True))
                                     .values(locked=False)
                                     .execution_options(synchronize_session=False))
            logger.info("%d stale maildrop locks released", result.rowcount)

    def message_count(self, username: str, include_marked: bool) -> int:
        stmt = (select(func.count(MessageModel.id))
                .where(MessageModel.account_id == self._account_ids(username)))

        if not include_marked:
            stmt = stmt.where(MessageModel.marked.is_(False))

        with self.session_factory() as session:
            return session.scalar(stmt) or 0

    def maildrop_size(self, username: str) -> int:
        stmt = (select(func.coalesce(func.sum(MessageModel.size), 0))
                .where(MessageModel.account_id == self._account_ids(username),
                       MessageModel.marked.is_(False)))

        with self.session_factory() as session:
            return session.scalar(stmt) or 0

    def message_size(self, username: str, pos: int) -> int:
        with self.session_factory() as session:
            mail = self._message(session, username, pos)
            return mail.size if mail else 0

    def message_exists(self, username: str, pos: int) -> bool:
        with self.session_factory() as session:
            mail = self._message(session, username, pos)
            return mail is not None and not mail.marked

    def mark_message(self, username: str, pos: int, marked: bool) -> None:
        with self.session_factory.begin() as session:
            mail = self._message(session, username, pos)
            if mail:
                mail.marked = marked

    def is_marked(self, username: str, pos: int) -> bool:
        with self.session_factory() as session:
            mail = self._message(session, username, pos)
            return mail is not None and mail.marked

    def message_content(self, username: str, pos: int) -> Optional[str]:
        with self.session_factory() as session:
            mail = self._message(session, username, pos)
            return mail.content if mail else None

    def message_uid(self, username: str, pos: int) -> Optional[str]:
        with self.session_factory() as session:
            mail = self._message(session, username, pos)
            return mail.uid if mail else None

    def unmark_all(self, username: str) -> None:
        with self.session_factory.begin() as session:
            session.execute(update(MessageModel)
                            .where(MessageModel.account_id == self._account_ids(username),
                                   MessageModel.marked.is_(True))
                            .values(marked=False)
                            .execution_options(synchronize_session=False))

    def delete_marked(self, username: str) -> int:
        with self.session_factory.begin() as session:
            result = session.execute(delete(MessageModel)
                                     .where(MessageModel.account_id == self._account_ids(username),
                                            MessageModel.marked.is_(True))
                                     .execution_options(synchronize_session=False))
            return result.rowcount

    def add_account(self, username: str, password: str) -> None:
        with self.session_factory.begin() as session:
            session.add(AccountModel(username=username,
                                     password=hash_password(password),
                                     locked=False))

    def add_message(self, username: str, content: str, uid: Optional[str] = None) -> str:
        if uid is None:
            uid = uuid.uuid4().hex

        with self.session_factory.begin() as session:
            account = self._account(session, username)
            if account is None:
                raise KeyError(f"unknown account: {username}")

            session.add(MessageModel(account_id=account.id,
                                     uid=uid,
                                     size=len(content.encode()),
                                     content=content,
                                     marked=False))
        return uid

    def close(self) -> None:
        self.engine.dispose()
        logger.info("store connection closed")
