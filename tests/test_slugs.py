# tests/test_slugs.py
"""Tests for slug allocation."""

import re

from beaconrelay.registry.slugs import MAX_SLUG_LENGTH, SlugAllocator, slugify


def allocator_with(taken):
    """Allocator over a set; allocated slugs are marked taken."""
    allocator = SlugAllocator(taken.__contains__)

    def allocate(name):
        slug = allocator.allocate(name)
        taken.add(slug)
        return slug

    return allocate


class TestSlugify:
    """Tests for slug normalization."""

    def test_basic(self):
        assert slugify("Cool World") == "cool-world"

    def test_folds_accents_and_punctuation(self):
        assert slugify("Café  World!") == "cafe-world"
        assert slugify("--Hello__There--") == "hello-there"

    def test_non_ascii_only_is_empty(self):
        assert slugify("日本語") == ""
        assert slugify("!!!") == ""

    def test_truncates_without_trailing_hyphen(self):
        slug = slugify("a" * 79 + " b")
        assert len(slug) <= MAX_SLUG_LENGTH
        assert not slug.endswith("-")


class TestSlugAllocator:
    """Tests for collision probing."""

    def test_sequential_suffixes(self):
        allocate = allocator_with(set())
        assert allocate("Cool World") == "cool-world"
        assert allocate("Cool World") == "cool-world-2"
        assert allocate("cool world") == "cool-world-3"

    def test_empty_name_falls_back(self):
        allocate = allocator_with(set())
        assert allocate("???") == "world"
        assert allocate("") == "world-2"

    def test_random_suffix_after_probes_exhausted(self):
        taken = {"game", "game-2", "game-3"}
        allocator = SlugAllocator(taken.__contains__, max_probes=3)
        assert re.fullmatch(r"game-\d{6}", allocator.allocate("Game"))
