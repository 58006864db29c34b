"""
Room tokens: short, speakable names like ``swift-fox-482``.
"""

import random
import re

ADJECTIVES = [
    "quick", "lazy", "sleepy", "noisy", "hungry", "brave", "clever", "silly",
    "happy", "grumpy", "funny", "gentle", "calm", "proud", "wise", "witty",
    "bright", "shiny", "dusty", "fuzzy", "smooth", "rough", "tiny", "giant",
    "swift",
]

NOUNS = [
    "fox", "dog", "cat", "mouse", "lion", "tiger", "bear", "frog", "panda",
    "koala", "lemur", "hippo", "rhino", "zebra", "horse", "eagle", "hawk",
    "whale", "shark", "dolphin", "squid", "robot", "dragon", "wizard", "ninja",
]

_TOKEN_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def generate_room_name(rng: random.Random | None = None) -> str:
    rng = rng or random
    adj = rng.choice(ADJECTIVES)
    noun = rng.choice(NOUNS)
    num = rng.randint(100, 999)
    return f"{adj}-{noun}-{num}"


def is_valid_token(token: str) -> bool:
    """Tokens travel inside ':'-separated beacons, so keep them plain."""
    return bool(_TOKEN_RE.match(token))


def format_room_name(token: str) -> str:
    """'swift-fox-482' -> 'Swift Fox 482'"""
    return " ".join(word[:1].upper() + word[1:] for word in token.split("-"))
