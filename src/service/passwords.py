"""Password hashing (CPU-bound work the demo wraps in a synchronous span)."""

import bcrypt


def hash_password(password: str, rounds: int = 4) -> str:
    """Hash a password with bcrypt at the given cost factor."""
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")
