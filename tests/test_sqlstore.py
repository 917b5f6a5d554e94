"""SqlMaildropStore tests on SQLite."""

import pytest
import sqlalchemy.exc

from popdrop.sqlstore import SqlMaildropStore, check_password, hash_password


class TestPasswords:

    def test_round_trip(self):
        stored = hash_password("s3cret")
        assert stored.startswith("pbkdf2_sha256$")
        assert check_password("s3cret", stored)
        assert not check_password("S3cret", stored)

    def test_salted(self):
        assert hash_password("same") != hash_password("same")

    def test_malformed_hash(self):
        assert not check_password("anything", "plain-text")


class TestAccounts:

    def test_account_exists(self, store):
        assert store.account_exists("bob")
        assert not store.account_exists("carol")

    def test_password_matches(self, store):
        assert store.password_matches("bob", "correct")
        assert not store.password_matches("bob", "wrong")
        assert not store.password_matches("carol", "correct")

    def test_duplicate_account(self, store):
        with pytest.raises(sqlalchemy.exc.IntegrityError):
            store.add_account("bob", "other")

    def test_try_lock_is_exclusive(self, store):
        assert store.try_lock("bob")
        assert not store.try_lock("bob")
        assert store.is_locked("bob")

        store.set_locked("bob", False)
        assert store.try_lock("bob")

    def test_try_lock_unknown_account(self, store):
        assert not store.try_lock("carol")
        assert not store.is_locked("carol")

    def test_unlock_all(self, store):
        store.set_locked("bob", True)
        store.set_locked("alice", True)

        store.unlock_all()

        assert not store.is_locked("bob")
        assert not store.is_locked("alice")


class TestMessages:

    def test_counts_and_sizes(self, store):
        assert store.message_count("bob", True) == 3
        assert store.message_count("bob", False) == 3
        assert store.maildrop_size("bob") == 1500
        assert [store.message_size("bob", pos) for pos in (1, 2, 3)] == [500, 400, 600]

    def test_unknown_user_has_empty_maildrop(self, store):
        assert store.message_count("carol", True) == 0
        assert store.maildrop_size("carol") == 0
        assert not store.message_exists("carol", 1)

    def test_positions_out_of_range(self, store):
        for pos in (-1, 0, 4):
            assert not store.message_exists("bob", pos)
            assert not store.is_marked("bob", pos)
            assert store.message_size("bob", pos) == 0
            assert store.message_content("bob", pos) is None
            assert store.message_uid("bob", pos) is None

    def test_marking(self, store):
        store.mark_message("bob", 2, True)

        assert store.is_marked("bob", 2)
        assert not store.message_exists("bob", 2)
        assert store.message_count("bob", False) == 2
        assert store.message_count("bob", True) == 3
        assert store.maildrop_size("bob") == 1100

        store.mark_message("bob", 2, False)
        assert store.message_exists("bob", 2)

    def test_marks_are_per_maildrop(self, store):
        store.add_message("alice", "Subject: hi\n\nhello")
        store.mark_message("alice", 1, True)

        store.unmark_all("bob")
        assert store.is_marked("alice", 1)

        assert store.delete_marked("bob") == 0
        assert store.message_count("alice", True) == 1

    def test_delete_marked(self, store):
        store.mark_message("bob", 1, True)
        store.mark_message("bob", 3, True)

        assert store.delete_marked("bob") == 2

        assert store.message_count("bob", True) == 1
        assert store.message_uid("bob", 1) == "uid-second"

    def test_positions_follow_creation_order(self, store):
        store.mark_message("bob", 1, True)
        store.delete_marked("bob")

        uid = store.add_message("bob", "Subject: late\n\nbody")

        assert [store.message_uid("bob", pos) for pos in (1, 2, 3)] == ["uid-second", "uid-third", uid]

    def test_generated_uid(self, store):
        uid = store.add_message("alice", "Subject: x\n\ny")
        assert len(uid) == 32
        assert store.message_uid("alice", 1) == uid

    def test_size_counts_octets(self, store):
        store.add_message("alice", "Subject: é\n\né")
        assert store.message_size("alice", 1) == len("Subject: é\n\né".encode())

    def test_add_message_unknown_account(self, store):
        with pytest.raises(KeyError):
            store.add_message("carol", "Subject: x\n\ny")


class TestPersistence:

    def test_file_store_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path}/drop.db"

        first = SqlMaildropStore(url)
        first.add_account("dave", "pw")
        first.add_message("dave", "Subject: kept\n\nbody", uid="kept-1")
        first.set_locked("dave", True)
        first.close()

        second = SqlMaildropStore(url)
        assert second.is_locked("dave")
        assert second.message_uid("dave", 1) == "kept-1"
        second.close()
