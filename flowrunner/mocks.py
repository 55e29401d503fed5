"""Mock value generators for {{$mock.<kind>}} placeholders.

Generation is stateless: every placeholder occurrence gets a fresh value.
"""

import time
import uuid
from typing import Callable, Dict, Optional

from faker import Faker

MOCK_PREFIX = "$mock."

# Shorthand placeholders and the generator kind they stand for
SHORTHANDS: Dict[str, str] = {
    "$uuid": "uuid",
    "$randomint": "number",
    "$timestamp": "timestamp",
}

fake = Faker()

GENERATORS: Dict[str, Callable[[], object]] = {
    "uuid": lambda: str(uuid.uuid4()),
    "email": lambda: fake.email(),
    "username": lambda: fake.user_name(),
    "firstname": lambda: fake.first_name(),
    "lastname": lambda: fake.last_name(),
    "fullname": lambda: fake.name(),
    "name": lambda: fake.name(),
    "job": lambda: fake.job(),
    "title": lambda: fake.job(),
    "company": lambda: fake.company(),
    "avatar": lambda: f"https://i.pravatar.cc/128?u={fake.random_int(0, 9999)}",
    "number": lambda: fake.random_int(0, 999),
    "randomint": lambda: fake.random_int(0, 999),
    "boolean": lambda: fake.pybool(),
    "timestamp": lambda: int(time.time() * 1000),
    "date": lambda: fake.date(),
    "city": lambda: fake.city(),
}


def mock_kind(key: str) -> Optional[str]:
    """Return the generator kind for a placeholder key, or None.

    Args:
        key: Trimmed placeholder content, e.g. "$mock.email" or "$uuid"

    Returns:
        Lowercased kind name if the key is a mock placeholder
    """
    if key.startswith(MOCK_PREFIX):
        return key[len(MOCK_PREFIX):].lower()
    return SHORTHANDS.get(key.lower())


def is_mock_key(key: str) -> bool:
    """Whether a placeholder key requests generated data."""
    return mock_kind(key) is not None


def generate(kind: str) -> Optional[object]:
    """Generate a fresh value for a mock kind.

    Returns:
        The generated value, or None for an unknown kind
    """
    generator = GENERATORS.get(kind.lower())
    if generator is None:
        return None
    return generator()
