from __future__ import annotations

import pytest

import dynarecord
from dynarecord import _normalize_repo_version


def test_version_normalization() -> None:
    assert _normalize_repo_version("1.2.3") == "1.2.3"
    assert _normalize_repo_version("1.2.3-rc.4") == "1.2.3rc4"
    assert _normalize_repo_version("1.2.3-rc4") == "1.2.3rc4"
    assert dynarecord.__repo_version__ == "0.1.0"
    assert dynarecord.__version__ == "0.1.0"


def test_lazy_exports_resolve() -> None:
    from dynarecord.table import Table
    from dynarecord.update_builder import UpdateBuilder

    assert dynarecord.Table is Table
    assert dynarecord.UpdateBuilder is UpdateBuilder
    for name in dynarecord.__all__:
        assert getattr(dynarecord, name) is not None


def test_unknown_attribute_raises() -> None:
    with pytest.raises(AttributeError):
        _ = dynarecord.NoSuchThing
