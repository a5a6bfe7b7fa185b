from __future__ import annotations

from collections.abc import Generator

import pytest

from leadflow.core.config import get_settings
from leadflow.crm.pagination import build_pagination_meta, normalize_page


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("CRM_DEFAULT_PAGE_SIZE", "20")
    monkeypatch.setenv("CRM_MAX_PAGE_SIZE", "50")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_meta_for_middle_page() -> None:
    meta = build_pagination_meta(page=2, limit=20, total=47)

    assert meta.total_pages == 3
    assert meta.has_next is True
    assert meta.has_prev is True


def test_meta_for_last_and_empty_pages() -> None:
    last = build_pagination_meta(page=3, limit=20, total=47)
    empty = build_pagination_meta(page=1, limit=20, total=0)

    assert last.has_next is False
    assert empty.total_pages == 0
    assert empty.has_next is False
    assert empty.has_prev is False


def test_normalize_page_defaults_and_clamps() -> None:
    assert normalize_page(None, None).limit == 20
    assert normalize_page(0, 10).page == 1
    assert normalize_page(-4, 10).page == 1
    assert normalize_page(1, 0).limit == 1
    assert normalize_page(1, 500).limit == 50


def test_offset_follows_page() -> None:
    assert normalize_page(3, 20).offset == 40
