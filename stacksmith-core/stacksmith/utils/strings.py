import hashlib
import secrets
import string
import uuid
from typing import Union

DEFAULT_ENCODING = "utf-8"


def to_str(obj: Union[str, bytes], encoding: str = DEFAULT_ENCODING, errors="strict") -> str:
    """If ``obj`` is an instance of ``binary_type``, return
    ``obj.decode(encoding, errors)``, otherwise return ``obj``"""
    return obj.decode(encoding, errors) if isinstance(obj, bytes) else obj


def short_uid_from_seed(seed: str) -> str:
    hash = hashlib.sha1(seed.encode("utf-8")).hexdigest()
    truncated_hash = hash[:32]
    return str(uuid.UUID(truncated_hash))[0:8]


def random_password(length: int = 30, exclude_characters: str = "") -> str:
    """Generate a random password of letters, digits and punctuation, without ``exclude_characters``."""
    alphabet = [
        c
        for c in string.ascii_letters + string.digits + string.punctuation
        if c not in exclude_characters
    ]
    if not alphabet:
        raise ValueError("no characters left to generate a password from")
    return "".join(secrets.choice(alphabet) for _ in range(length))
