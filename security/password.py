from functools import lru_cache

import bcrypt

BCRYPT_ROUNDS = 12

def hash_password(plain_password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")

def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        # malformed stored hash
        return False

@lru_cache(maxsize=1)
def _dummy_hash() -> str:
    return hash_password("carrental-dummy-password")

def burn_verification(plain_password: str) -> bool:
    """Checked when the email is unknown, so a miss costs the same as a wrong password."""
    verify_password(plain_password or "x", _dummy_hash())
    return False
