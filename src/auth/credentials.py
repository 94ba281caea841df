"""マーケットプレイス認証情報の保存・取得

認証情報dictはJSON化してAES-256-CBC（PKCS7パディング、ランダムIV）で暗号化し、
base64(IV + 暗号文) として marketplace_credentials テーブルに保存する。
鍵は環境変数 CREDENTIAL_ENCRYPTION_KEY（base64の32バイト、
またはSHA-256でハッシュする任意のパスフレーズ）。
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from src.db.database import Database
from src.marketplaces.errors import CredentialsNotFoundError
from src.marketplaces.factory import normalize_marketplace_id

logger = logging.getLogger(__name__)

KEY_ENV = "CREDENTIAL_ENCRYPTION_KEY"
IV_SIZE = 16


def derive_key(secret: str) -> bytes:
    """base64の32バイト鍵ならそのまま、それ以外はSHA-256で32バイトに"""
    try:
        raw = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        raw = b""
    if len(raw) == 32:
        return raw
    return hashlib.sha256(secret.encode("utf-8")).digest()


def generate_encryption_key() -> str:
    """CREDENTIAL_ENCRYPTION_KEY 用のランダム鍵（base64）"""
    return base64.b64encode(secrets.token_bytes(32)).decode("utf-8")


class CredentialManager:
    """ユーザー×マーケットプレイス単位の認証情報ストア"""

    def __init__(self, database: Database, encryption_key: Optional[str] = None):
        """
        Args:
            database: DBインスタンス
            encryption_key: 暗号鍵（Noneなら環境変数から読む）

        Raises:
            ValueError: 鍵が設定されていない
        """
        secret = encryption_key or os.environ.get(KEY_ENV)
        if not secret:
            raise ValueError(f"{KEY_ENV} is not set")
        self.db = database
        self._key = derive_key(secret)

    # --- 暗号化 ---

    def encrypt_credentials(self, credentials: Dict[str, Any]) -> str:
        iv = os.urandom(IV_SIZE)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(json.dumps(credentials).encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        encrypted = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + encrypted).decode("utf-8")

    def decrypt_credentials(self, encrypted: str) -> Dict[str, Any]:
        """復号（鍵違い・改ざんは ValueError）"""
        try:
            combined = base64.b64decode(encrypted)
            iv, body = combined[:IV_SIZE], combined[IV_SIZE:]
            decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(body) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            data = unpadder.update(padded) + unpadder.finalize()
            return json.loads(data.decode("utf-8"))
        except (ValueError, binascii.Error) as e:
            raise ValueError(f"Failed to decrypt credentials: {e}") from e

    # --- 保存・取得 ---

    def store_credentials(self, user_id: str, marketplace_id: str,
                          credentials: Dict[str, Any]) -> None:
        key = normalize_marketplace_id(marketplace_id)
        self.db.save_credentials(user_id, key, self.encrypt_credentials(credentials))
        logger.info(f"認証情報を保存: user={user_id} marketplace={key}")

    def get_credentials(self, user_id: str, marketplace_id: str) -> Dict[str, Any]:
        """Raises: CredentialsNotFoundError"""
        key = normalize_marketplace_id(marketplace_id)
        encrypted = self.db.get_encrypted_credentials(user_id, key)
        if encrypted is None:
            raise CredentialsNotFoundError(
                f"No credentials found for marketplace {marketplace_id}"
            )
        return self.decrypt_credentials(encrypted)

    def delete_credentials(self, user_id: str, marketplace_id: str) -> bool:
        deleted = self.db.delete_credentials(user_id, normalize_marketplace_id(marketplace_id))
        if deleted:
            logger.info(f"認証情報を削除: user={user_id} marketplace={marketplace_id}")
        return deleted

    def list_marketplaces(self, user_id: str) -> List[str]:
        return [row["marketplace_id"] for row in self.db.list_credential_marketplaces(user_id)]
