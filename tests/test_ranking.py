"""Tests for top-N / least-N selection."""

import pytest

from analytics import AggregateBucket, Dimension, aggregate, least_n, rank, top_and_least, top_n


def bucket(key, total, count=1):
    return AggregateBucket(key, count, float(total), 0.0, float(total) / count)


def keys(buckets):
    return [b.key for b in buckets]


def test_branch_scenario_top_and_least(branch_records):
    buckets = aggregate(branch_records, Dimension.BRANCH)
    assert keys(top_n(buckets, 1)) == ["A"]
    assert keys(least_n(buckets, 1)) == ["B"]


def test_ties_break_on_key_ascending():
    buckets = [bucket("c", 10), bucket("a", 10), bucket("b", 20)]
    assert keys(rank(buckets)) == ["b", "a", "c"]


def test_ranking_is_deterministic_across_input_orders():
    buckets = [bucket(k, 5) for k in ("d", "b", "a", "c")]
    first = keys(top_n(buckets, 4))
    second = keys(top_n(list(reversed(buckets)), 4))
    assert first == second == ["a", "b", "c", "d"]


@pytest.mark.parametrize("n", [0, 1, 2, 3])
def test_top_and_least_are_disjoint(n):
    buckets = [bucket("a", 10), bucket("b", 10), bucket("c", 5), bucket("d", 5), bucket("e", 1), bucket("f", 10)]
    views = top_and_least(buckets, n)
    assert not set(keys(views.top)) & set(keys(views.least))
    assert len(views.top) == len(views.least) == n


def test_least_is_reverse_of_canonical_order():
    buckets = [bucket("a", 1), bucket("b", 1), bucket("c", 3)]
    assert keys(least_n(buckets, 3)) == ["b", "a", "c"]


def test_rank_by_count():
    buckets = [bucket("a", 100, count=1), bucket("b", 10, count=4)]
    assert keys(top_n(buckets, 1, field="count")) == ["b"]


def test_invalid_arguments():
    with pytest.raises(ValueError):
        rank([bucket("a", 1)], field="name")
    with pytest.raises(ValueError):
        top_n([bucket("a", 1)], -1)


def test_n_larger_than_bucket_count_returns_everything():
    buckets = [bucket("a", 1), bucket("b", 2)]
    assert keys(top_n(buckets, 6)) == ["b", "a"]
