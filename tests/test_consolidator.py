"""Tests for folding raw samples into uber-samples."""

from __future__ import annotations

from dataclasses import replace

from meshmap.core.consolidator import consolidate_samples, group_by_tile
from meshmap.core.models import UberSample

from factories import hashed_sample

TILE = "c23nb6"


def _batch():
    return [
        hashed_sample(TILE + "aa", 100, observed=True),
        hashed_sample(TILE + "ab", 50, path=("R1",)),
    ]


def test_whole_batch_counts():
    uber = consolidate_samples(_batch(), cutoff_time=0)
    assert uber == UberSample(
        time=100,
        observed=1,
        heard=2,
        lost=0,
        last_observed=100,
        last_heard=100,
        repeaters=("r1",),
    )


def test_cutoff_excludes_older_samples():
    uber = consolidate_samples(_batch(), cutoff_time=75)
    assert uber.time == 100
    assert uber.observed == 1
    assert uber.heard == 1
    assert uber.lost == 0
    assert uber.repeaters == ()


def test_sample_at_cutoff_already_handled():
    uber = consolidate_samples(_batch(), cutoff_time=50)
    assert uber.heard == 1
    assert uber.repeaters == ()


def test_all_handled_returns_none():
    assert consolidate_samples(_batch(), cutoff_time=100) is None
    assert consolidate_samples([], cutoff_time=0) is None


def test_rerun_with_new_cutoff_is_noop():
    """Running twice, with the cutoff moved to the first result, adds nothing."""
    first = consolidate_samples(_batch(), cutoff_time=0)
    assert consolidate_samples(_batch(), cutoff_time=first.time) is None


def test_lost_and_partition():
    samples = [
        hashed_sample(TILE + "aa", 10),
        hashed_sample(TILE + "ab", 20, path=("a1",)),
        hashed_sample(TILE + "ac", 30, observed=True, path=("a2",)),
        hashed_sample(TILE + "ad", 40),
        hashed_sample(TILE + "ae", 5, observed=True),
    ]
    uber = consolidate_samples(samples, cutoff_time=7)
    assert uber.heard + uber.lost == 4
    assert uber.observed <= uber.heard
    assert uber.lost == 2
    assert uber.last_heard == 30
    assert uber.last_observed == 30
    assert uber.time == 40


def test_signal_max_ignores_missing():
    samples = [
        replace(hashed_sample(TILE + "aa", 10), snr=-4.5, rssi=-110.0),
        replace(hashed_sample(TILE + "ab", 20), snr=-7.0),
    ]
    uber = consolidate_samples(samples, cutoff_time=0)
    assert uber.snr == -4.5
    assert uber.rssi == -110.0

    assert consolidate_samples([hashed_sample(TILE + "aa", 10)], 0).snr is None


def test_repeaters_deduplicated_case_insensitive():
    samples = [
        hashed_sample(TILE + "aa", 10, path=("AB", "cd")),
        hashed_sample(TILE + "ab", 20, path=("ab", "EF")),
    ]
    uber = consolidate_samples(samples, cutoff_time=0)
    assert uber.repeaters == ("ab", "cd", "ef")


def test_group_by_tile_uses_first_six_chars():
    samples = [
        hashed_sample("c23nb6aa", 1),
        hashed_sample("c23nb7aa", 2),
        hashed_sample("c23nb6zz", 3),
    ]
    groups = group_by_tile(samples)
    assert list(groups) == ["c23nb6", "c23nb7"]
    assert [s.timestamp for s in groups["c23nb6"]] == [1, 3]
