"""認証情報マネージャーのテスト"""

import base64

import pytest

from src.auth.credentials import CredentialManager, derive_key, generate_encryption_key
from src.db.database import Database
from src.marketplaces.errors import CredentialsNotFoundError


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=str(tmp_path / "test.db"))
    database.init_tables()
    return database


@pytest.fixture
def manager(db):
    return CredentialManager(db, encryption_key=generate_encryption_key())


class TestKey:

    def test_generated_key_is_32_bytes(self):
        """生成キーは32バイト"""
        key = generate_encryption_key()
        assert len(base64.b64decode(key)) == 32
        assert derive_key(key) == base64.b64decode(key)

    def test_passphrase_is_hashed(self):
        """パスフレーズはハッシュして鍵にする"""
        assert len(derive_key("correct horse battery staple")) == 32

    def test_missing_key(self, db, monkeypatch):
        """暗号化キー未設定はエラー"""
        monkeypatch.delenv("CREDENTIAL_ENCRYPTION_KEY", raising=False)
        with pytest.raises(ValueError):
            CredentialManager(db)

    def test_key_from_env(self, db, monkeypatch):
        """環境変数から暗号化キーを読む"""
        monkeypatch.setenv("CREDENTIAL_ENCRYPTION_KEY", "passphrase")
        manager = CredentialManager(db)
        manager.store_credentials("u1", "shopify", {"access_token": "shpat"})
        assert CredentialManager(db, "passphrase").get_credentials("u1", "shopify") == {
            "access_token": "shpat",
        }


class TestEncryption:

    def test_ciphertext_is_random(self, manager):
        """同じ平文でも暗号文は毎回異なる"""
        data = {"api_key": "secret"}
        first = manager.encrypt_credentials(data)
        second = manager.encrypt_credentials(data)
        assert first != second
        assert "secret" not in first
        assert manager.decrypt_credentials(first) == data

    def test_wrong_key(self, manager, db):
        """別のキーでは復号できない"""
        encrypted = manager.encrypt_credentials({"api_key": "secret"})
        other = CredentialManager(db, encryption_key=generate_encryption_key())
        with pytest.raises(ValueError):
            other.decrypt_credentials(encrypted)

    def test_garbage(self, manager):
        """不正な暗号文は復号エラー"""
        with pytest.raises(ValueError):
            manager.decrypt_credentials("not-base64!!")


class TestStore:

    def test_store_normalizes_marketplace(self, manager, db):
        """マーケットプレイスIDを正規化して保存"""
        manager.store_credentials("u1", "Amazon_US", {"client_id": "amzn"})
        assert manager.list_marketplaces("u1") == ["amazon"]
        assert manager.get_credentials("u1", "amazon") == {"client_id": "amzn"}
        assert db.get_encrypted_credentials("u1", "amazon") != '{"client_id": "amzn"}'

    def test_not_found(self, manager):
        """未登録の認証情報"""
        with pytest.raises(CredentialsNotFoundError):
            manager.get_credentials("u1", "takealot")

    def test_delete(self, manager):
        """認証情報の削除"""
        manager.store_credentials("u1", "takealot", {"api_key": "k"})
        assert manager.delete_credentials("u1", "TAKEALOT") is True
        assert manager.list_marketplaces("u1") == []
