"""Pytest configuration: use temporary alpacka dirs so tests don't touch real data."""

import os
import shutil
import tempfile

import pytest

# Set before any test module imports alpacka (its module-level constants read them)
_ALPACKA_TEST_ROOT = tempfile.mkdtemp(prefix="alpacka_test_")
os.environ["ALPACKA_ROOT"] = os.path.join(_ALPACKA_TEST_ROOT, "store")
os.environ["ALPACKA_PACK_DIR"] = os.path.join(_ALPACKA_TEST_ROOT, "pack")

import pygit2  # noqa: E402
from pygit2.enums import FileMode  # noqa: E402

import alpacka  # noqa: E402

SIGNATURE = pygit2.Signature("alpacka tests", "tests@alpacka.invalid")


@pytest.fixture(scope="session", autouse=True)
def _cleanup_alpacka_root():
    """Remove the test dirs after all tests."""
    yield
    os.environ.pop("ALPACKA_ROOT", None)
    os.environ.pop("ALPACKA_PACK_DIR", None)
    shutil.rmtree(_ALPACKA_TEST_ROOT, ignore_errors=True)


def commit_file(repo, text, ref="HEAD", parents=None):
    """Commit ``plugin.lua`` holding ``text`` onto ``ref``; returns the hash."""
    builder = repo.TreeBuilder()
    builder.insert("plugin.lua", repo.create_blob(text.encode()), FileMode.BLOB)
    if parents is None:
        parents = [] if repo.head_is_unborn else [repo.head.target]
    oid = repo.create_commit(ref, SIGNATURE, SIGNATURE, text, builder.write(), parents)
    return str(oid)


def make_repo(path, revisions):
    """Create a bare repository with one commit per entry of ``revisions``.

    Returns the commit hashes in order.
    """
    repo = pygit2.init_repository(str(path), bare=True)
    return [commit_file(repo, text) for text in revisions]


@pytest.fixture
def repo_factory(tmp_path):
    def factory(name, revisions):
        path = tmp_path / "remotes" / name
        path.mkdir(parents=True)
        return str(path), make_repo(path, revisions)

    return factory


@pytest.fixture
def store(tmp_path):
    s = alpacka.GenerationStore(str(tmp_path / "store"))
    yield s
    s.close()


@pytest.fixture
def pack_dir(tmp_path):
    return str(tmp_path / "pack")


@pytest.fixture
def installer(pack_dir):
    return alpacka.Installer(pack_dir=pack_dir, jobs=4)


def spec(name, source, commit, reference="main", build=None):
    return alpacka.PackageSpec(
        name=name, source=source, reference=reference, pinned_commit=commit, build=build
    )


def lockfile(*specs):
    return alpacka.Lockfile(packages={s.name: s for s in specs})


def head_of(path):
    return str(pygit2.Repository(path).head.target)
