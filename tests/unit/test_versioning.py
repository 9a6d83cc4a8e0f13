"""Unit tests for version numbering and the downtime heuristic."""

import pytest

from schemaflow.domain.entities.evolution import ChangeKind, ChangeOperation, SchemaChange
from schemaflow.domain.exceptions import ValidationError
from schemaflow.domain.services.downtime_estimator import DowntimeEstimator
from schemaflow.domain.services.versioning import increment_version, parse_version


@pytest.mark.parametrize("current,expected", [
    (None, "0.0.1"),
    ("0.0.0", "0.0.1"),
    ("1.2.3", "1.2.4"),
    ("1.2.99", "1.3.0"),
    ("1.99.99", "2.0.0"),
    ("0.99.98", "0.99.99"),
])
def test_increment_version(current, expected):
    assert increment_version(current) == expected


@pytest.mark.parametrize("bad", ["1.2", "v1.2.3", "1.2.3-beta", "a.b.c"])
def test_parse_version_rejects_malformed(bad):
    with pytest.raises(ValidationError):
        parse_version(bad)


def test_versions_strictly_increase():
    version, seen = "0.0.0", []
    for _ in range(250):
        version = increment_version(version)
        seen.append(parse_version(version))
    assert seen == sorted(seen)
    assert len(set(seen)) == len(seen)


def _change(kind, operation):
    return SchemaChange(kind=kind, operation=operation, target="t")


def test_downtime_estimate_sums_and_rounds_up():
    estimator = DowntimeEstimator()
    changes = [
        _change(ChangeKind.TABLE, ChangeOperation.CREATE),
        _change(ChangeKind.TABLE, ChangeOperation.DELETE),
        _change(ChangeKind.COLUMN, ChangeOperation.CREATE),
        _change(ChangeKind.INDEX, ChangeOperation.CREATE),
    ]

    # 1 + 2 + 0.5 + 5
    assert estimator.estimate(changes) == 9
    assert estimator.estimate([_change(ChangeKind.COLUMN, ChangeOperation.MODIFY)]) == 1
    assert estimator.estimate([]) == 0
