from __future__ import annotations

from typing import Callable, Generator, Sequence, Tuple, TypeVar

T = TypeVar("T")


def paginate(
    fetch: Callable[[str | None], Tuple[Sequence[T], str | None]]
) -> Generator[T, None, None]:
    """
    Generic paginator yielding items from a fetch(skip_token) function.
    The fetch function must return (items, next_skip_token). If the token
    is falsy, pagination stops.
    """
    token: str | None = None
    while True:
        items, next_token = fetch(token)
        for it in items:
            yield it
        if not next_token:
            break
        token = next_token
