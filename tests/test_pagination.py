from __future__ import annotations

from arc_sql_license.util.pagination import paginate


def test_paginate_yields_all_items_and_pages_in_order() -> None:
    calls = []
    pages = {
        None: (["a", "b"], "next"),
        "next": (["c"], ""),
    }

    def fetch(token):
        calls.append(token)
        return pages[token]

    items = list(paginate(fetch))
    assert items == ["a", "b", "c"]
    assert calls == [None, "next"]


def test_paginate_empty_first_page() -> None:
    assert list(paginate(lambda token: ([], None))) == []
