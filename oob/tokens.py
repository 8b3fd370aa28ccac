import base64
import binascii
import logging
import secrets
from typing import Optional, Tuple

import bcrypt

from oob import config

logger = logging.getLogger("oob.tokens")

TOKEN_SECRET_LENGTH_BYTES = 32
BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def generate_secret() -> str:
    return base64.b64encode(secrets.token_bytes(TOKEN_SECRET_LENGTH_BYTES)).decode("ascii")


def encode_asset_token(asset_id: str, secret: str) -> str:
    return base64.b64encode(f"{asset_id}:{secret}".encode("utf-8")).decode("ascii")


def decode_asset_token(token: str) -> Optional[Tuple[str, str]]:
    """Split a bearer token into (asset_id, secret), or None if malformed."""
    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return None
    # The secret is base64 and never contains ':', asset ids might.
    asset_id, sep, secret = decoded.rpartition(":")
    if not sep or not asset_id or not secret:
        return None
    return asset_id, secret


def hash_secret(secret: str, rounds: Optional[int] = None) -> str:
    rounds = rounds if rounds is not None else config.SECRET_HASH_ROUNDS
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("ascii")


def verify_secret(secret: str, secret_hash: Optional[str]) -> bool:
    if not secret or not secret_hash or not secret_hash.startswith(BCRYPT_PREFIXES):
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("ascii"))
    except ValueError as e:
        logger.warning("Stored secret hash rejected by bcrypt: %s", e)
        return False


def hash_rounds(secret_hash: str) -> Optional[int]:
    parts = secret_hash.split("$")
    if len(parts) < 4:
        return None
    try:
        return int(parts[2])
    except ValueError:
        return None


def needs_rehash(secret_hash: str, rounds: Optional[int] = None) -> bool:
    """True when the hash was produced with parameters other than the current ones."""
    rounds = rounds if rounds is not None else config.SECRET_HASH_ROUNDS
    if not secret_hash.startswith("$2b$"):
        return True
    return hash_rounds(secret_hash) != rounds


def generate_upload_token(length: Optional[int] = None) -> str:
    return secrets.token_hex(length if length is not None else config.UPLOAD_TOKEN_BYTES)


def upload_token_matches(supplied: str, expected: str) -> bool:
    # Normalise to the stored length so compare_digest always sees equal-length
    # inputs, then require the lengths to agree as well.
    normalized = supplied[: len(expected)].ljust(len(expected), "0")
    same_bytes = secrets.compare_digest(normalized.encode("utf-8"), expected.encode("utf-8"))
    same_length = len(supplied) == len(expected)
    return same_bytes & same_length
