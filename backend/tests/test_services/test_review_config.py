from __future__ import annotations

import pytest

from panelreview.exceptions import InvalidInputError
from panelreview.schemas.review import ReviewConfig, ReviewConfigUpdate
from panelreview.services.review_config import ReviewConfigStore


def test_defaults():
    config = ReviewConfigStore().get()
    assert config == ReviewConfig(
        mode="auto",
        max_iterations=3,
        min_acceptance_score=0.7,
        auto_approve_above=0.9,
        pause_for_human_below=0.5,
    )


def test_get_returns_copy():
    store = ReviewConfigStore()
    config = store.get()
    config.max_iterations = 99
    assert store.get().max_iterations == 3


def test_partial_update_merges():
    store = ReviewConfigStore()
    updated = store.set(ReviewConfigUpdate(mode="hitl", max_iterations=5))
    assert updated.mode == "hitl"
    assert updated.max_iterations == 5
    assert updated.min_acceptance_score == 0.7
    assert store.get() == updated


def test_update_from_dict_ignores_none():
    store = ReviewConfigStore({"mode": "hitl"})
    updated = store.set({"min_acceptance_score": 0.8, "mode": None})
    assert updated.mode == "hitl"
    assert updated.min_acceptance_score == 0.8


@pytest.mark.parametrize(
    "changes",
    [
        {"min_acceptance_score": 1.5},
        {"pause_for_human_below": -0.1},
        {"max_iterations": 0},
        {"mode": "unattended"},
    ],
)
def test_invalid_update_leaves_config_unchanged(changes):
    store = ReviewConfigStore()
    before = store.get()
    with pytest.raises(InvalidInputError) as exc_info:
        store.set(changes)
    assert exc_info.value.details["errors"]
    assert store.get() == before


def test_unknown_field_rejected():
    store = ReviewConfigStore()
    with pytest.raises(InvalidInputError, match="Unknown review configuration fields"):
        store.set({"threshold": 0.5})


def test_invalid_initial_config():
    with pytest.raises(InvalidInputError):
        ReviewConfigStore({"max_iterations": -1})
