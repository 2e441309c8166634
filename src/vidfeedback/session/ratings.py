"""CategoryRatings: the transient ``category -> rating | None`` map kept during capture.

On finalize it collapses to the sparse ``categories`` map stored in a session;
on load the stored map expands back, with boolean ``true`` meaning the maximal
rating.
"""
from typing import Iterable, Mapping, Optional, Union

from vidfeedback.config import DEFAULT_MAX_RATING

CategoryRatings = dict[str, Optional[int]]


def collapse_ratings(ratings: Mapping[str, Optional[int]]) -> dict[str, int]:
    """Drop unrated (None) and zero entries."""
    return {category: rating for category, rating in ratings.items() if rating}


def expand_categories(
    categories: Mapping[str, Union[bool, int]],
    max_rating: int = DEFAULT_MAX_RATING,
) -> CategoryRatings:
    expanded: CategoryRatings = {}
    for category, value in categories.items():
        if isinstance(value, bool):
            expanded[category] = max_rating if value else None
        elif isinstance(value, int):
            expanded[category] = value if value > 0 else None
        else:
            expanded[category] = None
    return expanded


def ratings_from_events(events: Iterable) -> CategoryRatings:
    """Final rating per category as given by the last ``category`` event for it."""
    ratings: CategoryRatings = {}
    for event in events:
        if event.type == "category":
            ratings[event.payload.category] = event.payload.rating or None
    return ratings


def carried_ratings(
    categories: Mapping[str, Union[bool, int]],
    events: Iterable,
    max_rating: int = DEFAULT_MAX_RATING,
) -> CategoryRatings:
    """Stored ratings that no ``category`` event touches.

    These were set before the recording started, so they hold from offset 0.
    """
    touched = {event.payload.category for event in events if event.type == "category"}
    return {
        category: rating
        for category, rating in expand_categories(categories, max_rating).items()
        if rating is not None and category not in touched
    }
