"""Anonymous color + animal display identities.

Derived deterministically from the player id, so the same id always
renders as the same avatar without storing anything.  Display-only:
never used for authorization or equality.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass

# (hex, display name), readable on both light and dark backgrounds
IDENTITY_COLORS: tuple[tuple[str, str], ...] = (
    ("#E53935", "Red"),
    ("#D81B60", "Pink"),
    ("#8E24AA", "Purple"),
    ("#5E35B1", "Violet"),
    ("#3949AB", "Indigo"),
    ("#1E88E5", "Blue"),
    ("#039BE5", "Sky"),
    ("#00ACC1", "Cyan"),
    ("#00897B", "Teal"),
    ("#43A047", "Green"),
    ("#7CB342", "Lime"),
    ("#C0CA33", "Olive"),
    ("#FDD835", "Yellow"),
    ("#FFB300", "Amber"),
    ("#FB8C00", "Orange"),
    ("#F4511E", "Coral"),
    ("#6D4C41", "Brown"),
    ("#757575", "Grey"),
)

IDENTITY_ANIMALS: tuple[str, ...] = (
    "Ant", "Badger", "Bat", "Bear", "Beaver", "Bee", "Bird", "Bison",
    "Butterfly", "Camel", "Cat", "Cheetah", "Chicken", "Crab", "Crow",
    "Deer", "Dog", "Dolphin", "Dove", "Dragon", "Duck", "Eagle", "Elephant",
    "Falcon", "Fish", "Flamingo", "Fox", "Frog", "Giraffe", "Goat",
    "Gorilla", "Hamster", "Hawk", "Hedgehog", "Hippo", "Horse", "Jaguar",
    "Kangaroo", "Koala", "Lemur", "Leopard", "Lion", "Llama", "Lobster",
    "Monkey", "Moose", "Mouse", "Octopus", "Otter", "Owl", "Panda",
    "Panther", "Parrot", "Peacock", "Penguin", "Pig", "Puma", "Rabbit",
    "Raccoon", "Raven", "Rhino", "Seal", "Shark", "Sheep", "Snake",
    "Spider", "Squid", "Swan", "Tiger", "Turtle", "Whale", "Wolf", "Zebra",
)


@dataclass(frozen=True)
class DisplayIdentity:
    color: str
    color_index: int
    animal: str
    name: str


def identity_for(player_id: str) -> DisplayIdentity:
    """Deterministic display identity for ``player_id``."""
    digest = hashlib.sha256(player_id.encode("utf-8")).digest()
    color_index = int.from_bytes(digest[:4], "big") % len(IDENTITY_COLORS)
    animal_index = int.from_bytes(digest[4:8], "big") % len(IDENTITY_ANIMALS)
    color_hex, color_name = IDENTITY_COLORS[color_index]
    animal = IDENTITY_ANIMALS[animal_index]
    return DisplayIdentity(
        color=color_hex,
        color_index=color_index,
        animal=animal,
        name=f"{color_name} {animal}",
    )
