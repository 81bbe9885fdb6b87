import json
import logging

import pytest

from conftest import ext_dict
from zedex.resolve import BestAvailableVersion, LegacyFlatArchive, Resolver


def seed(root, relpath, body=b"x"):
    path = root / relpath
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(body)
    return path


def seed_versions(root, ext_id, *versions):
    path = root / ext_id / "versions.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"data": [ext_dict(ext_id, v) for v in versions]}))


@pytest.fixture
def resolver(tmp_path):
    return Resolver(tmp_path)


def test_latest_wins_over_everything(tmp_path, resolver):
    latest = seed(tmp_path, "foo/foo.tgz")
    seed(tmp_path, "foo/foo-9.0.0.tgz")
    seed_versions(tmp_path, "foo", "9.0.0")
    seed(tmp_path, "foo.tar.gz")

    found = resolver.resolve("foo")

    assert found.path == latest
    assert found.strategy == "latest"


def test_best_available_compares_numerically(tmp_path, resolver):
    seed(tmp_path, "acme/acme-1.2.0.tgz")
    seed(tmp_path, "acme/acme-1.10.0.tgz")
    seed_versions(tmp_path, "acme", "1.2.0", "1.10.0")

    found = resolver.resolve("acme")

    assert found.strategy == "best-available"
    assert found.version == "1.10.0"
    assert found.path == tmp_path / "acme" / "acme-1.10.0.tgz"


def test_best_available_ignores_listed_versions_not_on_disk(tmp_path, resolver):
    seed(tmp_path, "acme/acme-1.2.0.tgz")
    seed_versions(tmp_path, "acme", "1.2.0", "2.0.0")
    assert resolver.resolve("acme").version == "1.2.0"


def test_unparsable_versions_are_skipped_with_warning(tmp_path, resolver, caplog):
    seed(tmp_path, "acme/acme-not.a.version.tgz")
    seed(tmp_path, "acme/acme-0.3.0.tgz")
    seed_versions(tmp_path, "acme", "not.a.version", "0.3.0")

    with caplog.at_level(logging.WARNING):
        found = resolver.resolve("acme")

    assert found.version == "0.3.0"
    assert "not.a.version" in caplog.text


def test_legacy_flat_archive(tmp_path, resolver):
    legacy = seed(tmp_path, "old.tar.gz")
    found = resolver.resolve("old")
    assert found.path == legacy
    assert found.strategy == "legacy"


def test_malformed_versions_file_falls_through_to_legacy(tmp_path, resolver):
    (tmp_path / "old").mkdir()
    (tmp_path / "old" / "versions.json").write_text("{broken")
    legacy = seed(tmp_path, "old.tar.gz")
    assert resolver.resolve("old").path == legacy


def test_explicit_version_only_tries_exact_file(tmp_path, resolver):
    seed(tmp_path, "foo/foo.tgz")
    seed(tmp_path, "foo.tar.gz")
    assert resolver.resolve("foo", "1.0.0") is None

    exact = seed(tmp_path, "foo/foo-1.0.0.tgz")
    found = resolver.resolve("foo", "1.0.0")
    assert found.path == exact
    assert found.strategy == "exact"


def test_nothing_cached(resolver):
    assert resolver.resolve("ghost") is None


def test_chain_is_configurable(tmp_path):
    seed(tmp_path, "foo/foo.tgz")
    legacy = seed(tmp_path, "foo.tar.gz")
    resolver = Resolver(tmp_path, latest_chain=[LegacyFlatArchive(), BestAvailableVersion()])
    assert resolver.resolve("foo").path == legacy


def test_non_semver_versions_are_skipped(tmp_path, resolver):
    seed(tmp_path, "acme/acme-2.0.tgz")
    seed(tmp_path, "acme/acme-v3.0.0.tgz")
    seed(tmp_path, "acme/acme-1.10.0.tgz")
    seed_versions(tmp_path, "acme", "2.0", "v3.0.0", "1.10.0")

    assert resolver.resolve("acme").version == "1.10.0"


def test_prerelease_identifiers_compare_lexically(tmp_path, resolver):
    seed(tmp_path, "acme/acme-1.0.0-alpha.tgz")
    seed(tmp_path, "acme/acme-1.0.0-dev.tgz")
    seed_versions(tmp_path, "acme", "1.0.0-alpha", "1.0.0-dev")

    assert resolver.resolve("acme").version == "1.0.0-dev"


def test_release_outranks_its_prerelease(tmp_path, resolver):
    seed(tmp_path, "acme/acme-1.0.0-rc.1.tgz")
    seed(tmp_path, "acme/acme-1.0.0.tgz")
    seed_versions(tmp_path, "acme", "1.0.0", "1.0.0-rc.1")

    assert resolver.resolve("acme").version == "1.0.0"
