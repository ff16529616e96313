"""Property-based tests for symbol path sanitization."""

from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from hypothesis import given, strategies as st

from symcache.proxy.errors import InvalidSymbolPath
from symcache.proxy.store import SymbolCacheStore


path_text = st.text(
    alphabet=st.characters(blacklist_categories=("Cs", "Cc")),
    min_size=1,
    max_size=64,
)


@given(path_text)
def test_resolved_paths_stay_under_cache_root(symbol_path: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        store = SymbolCacheStore(Path(tmp_dir))
        try:
            resolved = store.resolve(symbol_path)
        except InvalidSymbolPath:
            return
        assert resolved.is_relative_to(store.root)
        assert resolved != store.root


@given(path_text)
def test_parent_segments_are_always_rejected(symbol_path: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        store = SymbolCacheStore(Path(tmp_dir))
        with pytest.raises(InvalidSymbolPath):
            store.resolve(f"../{symbol_path}")
        with pytest.raises(InvalidSymbolPath):
            store.resolve(f"{symbol_path}/../..")
