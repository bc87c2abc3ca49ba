"""Shared test fixtures."""

from pathlib import Path

import numpy as np
import pytest

from resolver import ImageBuffer
from resolver.reader import read_catalog
from resolver.repository import InMemoryCatalog


DATA_DIR = Path(__file__).resolve().parent.parent / 'data'


@pytest.fixture(scope='session')
def data_dir() -> Path:
    """Path to the data directory."""
    return DATA_DIR


@pytest.fixture(scope='session')
def catalog_entries():
    """All entries from catalog.csv."""
    return read_catalog(DATA_DIR / 'catalog.csv')


@pytest.fixture
def catalog(catalog_entries) -> InMemoryCatalog:
    """Fresh in-memory catalog per test (writes do not leak)."""
    return InMemoryCatalog(catalog_entries)


@pytest.fixture(scope='session')
def good_image() -> ImageBuffer:
    """Well-exposed, textured 1200x1600 capture."""
    rng = np.random.default_rng(7)
    pixels = rng.integers(60, 200, size=(1600, 1200), dtype=np.uint8)
    return ImageBuffer(pixels=pixels, width=1200, height=1600, byte_size=200_000)


@pytest.fixture(scope='session')
def dark_image() -> ImageBuffer:
    """Flat, nearly black capture."""
    pixels = np.full((600, 600), 5, dtype=np.uint8)
    return ImageBuffer(pixels=pixels, width=600, height=600, byte_size=80_000)
