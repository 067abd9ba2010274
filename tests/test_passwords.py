"""Password hashing behaviour."""

from shelfkeeper.service.passwords import PasswordHasher


class TestPasswordHasher:
    def test_hash_is_argon2id_and_not_plaintext(self, fast_hasher):
        digest = fast_hasher.hash("correct horse battery")
        assert digest.startswith("$argon2id$")
        assert "correct horse battery" not in digest

    def test_same_password_produces_different_hashes(self, fast_hasher):
        assert fast_hasher.hash("samesame1") != fast_hasher.hash("samesame1")

    def test_compare_accepts_match_and_rejects_mismatch(self, fast_hasher):
        digest = fast_hasher.hash("bookworm-42")
        assert fast_hasher.compare("bookworm-42", digest) is True
        assert fast_hasher.compare("bookworm-43", digest) is False

    def test_compare_with_garbage_digest_is_false(self, fast_hasher):
        assert fast_hasher.compare("anything", "not-a-hash") is False

    def test_weaker_parameters_need_rehash(self, fast_hasher):
        digest = fast_hasher.hash("bookworm-42")
        assert PasswordHasher().needs_rehash(digest) is True
        assert fast_hasher.needs_rehash(digest) is False

    def test_default_cost_is_memory_hard(self):
        digest = PasswordHasher().hash("bookworm-42")
        assert "m=65536" in digest
