import string

import pytest

from stacksmith.utils.strings import random_password, short_uid_from_seed, to_str


def test_to_str():
    assert to_str(b"stack") == "stack"
    assert to_str("stack") == "stack"


def test_short_uid_from_seed():
    uid = short_uid_from_seed("shop:Database")

    assert uid == short_uid_from_seed("shop:Database")
    assert uid != short_uid_from_seed("shop:Vpc")
    assert len(uid) == 8
    assert set(uid) <= set(string.hexdigits.lower())


def test_random_password():
    password = random_password(40, exclude_characters="\"@/\\ |'")

    assert len(password) == 40
    assert not set(password) & set("\"@/\\ |'")
    assert random_password(40) != random_password(40)


def test_random_password_without_alphabet():
    with pytest.raises(ValueError):
        random_password(8, exclude_characters=string.ascii_letters + string.digits + string.punctuation)
