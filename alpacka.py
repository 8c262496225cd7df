#!/usr/bin/env python3
"""
alpacka - generation-based plugin manager for Neovim
Single-file implementation:
- Strict lockfile model (package name -> source + pinned commit + optional build)
- Append-only generation store with an atomically replaced active pointer
- Deterministic diff planner between generations
- In-process git source backend (clone/checkout/remove) through pygit2
- Parallel installer with per-package build hooks and failure reporting
- Install and offline rollback transactions
"""

import argparse
import enum
import hashlib
import json
import logging
import os
import re
import shutil
import sqlite3
import subprocess
import sys
import tempfile
from collections.abc import Hashable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import pygit2  # requires pygit2 (libgit2 bindings)
import yaml  # requires PyYAML
from pygit2.enums import CheckoutStrategy

# ==================== Configuration ====================
ALPACKA_ROOT = os.environ.get("ALPACKA_ROOT", os.path.expanduser("~/.local/share/alpacka"))
PACK_DIR = os.environ.get(
    "ALPACKA_PACK_DIR", os.path.expanduser("~/.local/share/nvim/site/pack/alpacka/start")
)
DB_NAME = "alpacka.db"
ACTIVE_POINTER = "active"
ARCHIVE_FORMAT = 1

COMMIT_PATTERN = re.compile(r"^[0-9a-fA-F]{40}$")
NAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
REQUIRED_KEYS = {"source", "reference", "commit"}
OPTIONAL_KEYS = {"build"}


def parse_jobs(value, origin="ALPACKA_JOBS") -> int:
    try:
        jobs = int(value)
    except (TypeError, ValueError):
        jobs = 0
    if jobs < 1:
        raise FormatError(f"{origin} must be a positive integer, got {value!r}")
    return jobs


def default_jobs() -> int:
    jobs = os.environ.get("ALPACKA_JOBS")
    if jobs:
        return parse_jobs(jobs)
    return os.cpu_count() or 1


# ==================== Utility Functions ====================
_log = logging.getLogger("alpacka")


def setup_logging(level="INFO", stream=None):
    """Attach a single stderr handler to the ``alpacka`` logger."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    _log.setLevel(level)
    _log.handlers.clear()
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    _log.addHandler(handler)


def logger(msg, level="INFO"):
    _log.log(getattr(logging, level), msg)


def run_cmd(cmd, cwd=None, env=None):
    """Run shell command and return the completed process with its output."""
    return subprocess.run(cmd, shell=True, cwd=cwd, env=env, capture_output=True, text=True)


def ensure_dir(path):
    os.makedirs(path, exist_ok=True)


def encode_canonical(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def compute_hash(data) -> str:
    """SHA256 of canonical JSON. Bytes are taken as already encoded."""
    if not isinstance(data, bytes):
        data = encode_canonical(data)
    return hashlib.sha256(data).hexdigest()


def short(commit: str) -> str:
    return commit[:7]


# ==================== Errors ====================
class AlpackaError(Exception):
    """Base class for every error alpacka reports to the user."""


class FormatError(AlpackaError):
    """A lockfile document or setting is malformed."""


class NetworkError(AlpackaError):
    """Talking to a package's remote failed."""


class GitReferenceError(AlpackaError):
    """A pinned commit does not exist in the repository's history."""


class FilesystemError(AlpackaError):
    """Creating, opening or removing something on disk failed."""


class BuildError(AlpackaError):
    """A package's build command could not run or exited non-zero."""


class CorruptionError(AlpackaError):
    """Stored state is inconsistent (e.g. the active pointer is dangling)."""


class NotFoundError(AlpackaError):
    """An unknown generation id was requested."""


# ==================== Lockfile Model ====================
@dataclass(frozen=True)
class PackageSpec:
    """One package pinned to an exact commit."""

    name: str
    source: str
    reference: str
    pinned_commit: str
    build: Optional[str] = None

    @property
    def install_path(self) -> str:
        # names are validated to a single path segment
        return self.name

    def to_dict(self) -> Dict[str, str]:
        entry = {"source": self.source, "reference": self.reference, "commit": self.pinned_commit}
        if self.build is not None:
            entry["build"] = self.build
        return entry


@dataclass(frozen=True)
class Lockfile:
    """A fully resolved set of packages; a generation once stored."""

    packages: Mapping[str, PackageSpec] = field(default_factory=dict)
    id: Optional[int] = None
    parent_id: Optional[int] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "packages", MappingProxyType(dict(self.packages)))

    @classmethod
    def empty(cls) -> "Lockfile":
        return cls()

    def to_document(self) -> Dict[str, Dict[str, str]]:
        return {name: spec.to_dict() for name, spec in sorted(self.packages.items())}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format": ARCHIVE_FORMAT,
            "id": self.id,
            "parent_id": self.parent_id,
            "created_at": self.created_at,
            "packages": self.to_document(),
        }


def _parse_entry(name, entry) -> PackageSpec:
    if not isinstance(name, str) or not NAME_PATTERN.match(name) or name in (".", ".."):
        raise FormatError(f"Invalid package name: {name!r}")
    if not isinstance(entry, dict):
        raise FormatError(f"Package {name}: entry must be a mapping")
    missing = REQUIRED_KEYS - set(entry)
    if missing:
        raise FormatError(f"Package {name}: missing {', '.join(sorted(missing))}")
    unknown = set(entry) - REQUIRED_KEYS - OPTIONAL_KEYS
    if unknown:
        raise FormatError(f"Package {name}: unknown keys {', '.join(sorted(map(str, unknown)))}")

    source = entry["source"]
    if not isinstance(source, str) or not source.strip():
        raise FormatError(f"Package {name}: source must be a non-empty string")
    reference = entry["reference"]
    if not isinstance(reference, str):
        raise FormatError(f"Package {name}: reference must be a string")
    commit = entry["commit"]
    if not isinstance(commit, str) or not COMMIT_PATTERN.match(commit):
        raise FormatError(f"Package {name}: commit must be a full 40-character hex hash")
    build = entry.get("build")
    if build is not None and (not isinstance(build, str) or not build.strip()):
        raise FormatError(f"Package {name}: build must be a non-empty command string")
    return PackageSpec(
        name=name, source=source, reference=reference, pinned_commit=commit.lower(), build=build
    )


def parse_lockfile(document: Any) -> Lockfile:
    """Validate a lockfile document and build a Lockfile from it.

    The document maps package names to ``{source, reference, commit}`` plus
    an optional ``build`` shell command.
    Any violation raises FormatError; nothing is accepted partially.
    """
    if not isinstance(document, dict):
        raise FormatError("Lockfile must be a mapping of package name to package entry")
    return Lockfile(packages={name: _parse_entry(name, entry) for name, entry in document.items()})


def _reject_duplicates(pairs):
    result = {}
    for key, value in pairs:
        if key in result:
            raise FormatError(f"Duplicate key: {key!r}")
        result[key] = value
    return result


class _UniqueKeyLoader(yaml.SafeLoader):
    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    "found unhashable key",
                    key_node.start_mark,
                )
            if key in seen:
                raise FormatError(f"Duplicate key: {key!r}")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def load_lockfile_file(path: str) -> Lockfile:
    """Load a lockfile document from JSON, or YAML for .yaml/.yml files."""
    try:
        with open(path) as f:
            text = f.read()
    except OSError as e:
        raise FormatError(f"Could not read lockfile {path}: {e}") from e

    try:
        if path.endswith((".yaml", ".yml")):
            document = yaml.load(text, Loader=_UniqueKeyLoader)
        else:
            document = json.loads(text, object_pairs_hook=_reject_duplicates)
    except (ValueError, yaml.YAMLError) as e:
        raise FormatError(f"Could not parse lockfile {path}: {e}") from e
    return parse_lockfile(document)


def dump_lockfile(lockfile: Lockfile) -> str:
    return json.dumps(lockfile.to_document(), indent=2, sort_keys=True) + "\n"


def serialize_generation(lockfile: Lockfile) -> bytes:
    return encode_canonical(lockfile.to_dict())


def deserialize_generation(record: bytes) -> Lockfile:
    try:
        data = json.loads(record)
    except ValueError as e:
        raise CorruptionError(f"Unreadable generation record: {e}") from e
    if not isinstance(data, dict) or data.get("format") != ARCHIVE_FORMAT:
        raise CorruptionError("Generation record has an unknown layout")
    try:
        lockfile = parse_lockfile(data.get("packages"))
    except FormatError as e:
        raise CorruptionError(f"Generation record is invalid: {e}") from e
    return replace(
        lockfile,
        id=data.get("id"),
        parent_id=data.get("parent_id"),
        created_at=data.get("created_at"),
    )


# ==================== Database ====================
class Database:
    def __init__(self, db_path):
        try:
            self.conn = sqlite3.connect(db_path)
            self._init_tables()
        except sqlite3.Error as e:
            raise FilesystemError(f"Could not open generation database {db_path}: {e}") from e

    def _init_tables(self):
        c = self.conn.cursor()
        c.execute("""
            CREATE TABLE IF NOT EXISTS generations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                parent_id INTEGER,
                created TEXT NOT NULL,
                digest TEXT NOT NULL,
                record BLOB NOT NULL
            )
        """)
        self.conn.commit()

    def close(self):
        self.conn.close()

    def add_generation(self, parent_id, created, encode):
        """Insert one generation in a single transaction.

        ``encode`` receives the assigned id and returns the record bytes, so
        the stored archive carries its own id.
        """
        with self.conn:
            c = self.conn.execute(
                "INSERT INTO generations (parent_id, created, digest, record) VALUES (?,?,?,?)",
                (parent_id, created, "", b""),
            )
            generation_id = c.lastrowid
            record = encode(generation_id)
            self.conn.execute(
                "UPDATE generations SET digest=?, record=? WHERE id=?",
                (compute_hash(record), record, generation_id),
            )
        return generation_id

    def get_generation(self, generation_id):
        c = self.conn.cursor()
        c.execute("SELECT digest, record FROM generations WHERE id=?", (generation_id,))
        return c.fetchone()

    def list_generation_ids(self):
        c = self.conn.cursor()
        c.execute("SELECT id FROM generations ORDER BY id")
        return [row[0] for row in c.fetchall()]


# ==================== Generation Store ====================
class GenerationStore:
    """Every committed generation plus the pointer to the active one."""

    def __init__(self, root=ALPACKA_ROOT):
        self.root = root
        try:
            ensure_dir(self.root)
        except OSError as e:
            raise FilesystemError(f"Could not create store directory {root}: {e}") from e
        self.db = Database(os.path.join(self.root, DB_NAME))
        self.pointer_path = os.path.join(self.root, ACTIVE_POINTER)

    def close(self):
        self.db.close()

    def append(self, lockfile: Lockfile) -> int:
        parent_id = self.active_id()
        created = datetime.now(timezone.utc).isoformat()

        def encode(generation_id):
            stored = replace(lockfile, id=generation_id, parent_id=parent_id, created_at=created)
            return serialize_generation(stored)

        try:
            generation_id = self.db.add_generation(parent_id, created, encode)
        except sqlite3.Error as e:
            raise FilesystemError(f"Could not store generation: {e}") from e
        logger(f"Stored generation {generation_id} (parent {parent_id})", "DEBUG")
        return generation_id

    def get(self, generation_id: int) -> Lockfile:
        try:
            row = self.db.get_generation(generation_id)
        except sqlite3.Error as e:
            raise FilesystemError(f"Could not read generation {generation_id}: {e}") from e
        if row is None:
            raise NotFoundError(f"Generation {generation_id} not found")
        digest, record = row
        if compute_hash(record) != digest:
            raise CorruptionError(f"Generation {generation_id} does not match its digest")
        lockfile = deserialize_generation(record)
        if lockfile.id != generation_id:
            raise CorruptionError(f"Generation {generation_id} is stored under id {lockfile.id}")
        return lockfile

    def list(self) -> List[Lockfile]:
        return [self.get(generation_id) for generation_id in self.db.list_generation_ids()]

    def active_id(self) -> Optional[int]:
        try:
            with open(self.pointer_path) as f:
                raw = f.read().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Could not read active pointer: {e}") from e
        try:
            return int(raw)
        except ValueError as e:
            raise CorruptionError(f"Active pointer holds {raw!r}, not a generation id") from e

    def active(self) -> Lockfile:
        generation_id = self.active_id()
        if generation_id is None:
            return Lockfile.empty()
        try:
            return self.get(generation_id)
        except NotFoundError as e:
            raise CorruptionError(
                f"Active pointer references missing generation {generation_id}; "
                "choose a generation to restore with `rollback --repair`"
            ) from e

    def set_active(self, generation_id: int):
        """Atomically repoint the active generation. No network, no resolution."""
        self.get(generation_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.root, prefix=".active.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{generation_id}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.pointer_path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise FilesystemError(f"Could not update active pointer: {e}") from e
        logger(f"Active generation is now {generation_id}", "DEBUG")


# ==================== Diff Planner ====================
class OpKind(enum.Enum):
    UPDATE = "update"
    ADD = "add"
    REMOVE = "remove"
    NOOP = "noop"


KIND_ORDER = [OpKind.UPDATE, OpKind.ADD, OpKind.REMOVE, OpKind.NOOP]


@dataclass(frozen=True)
class Operation:
    kind: OpKind
    old: Optional[PackageSpec] = None
    new: Optional[PackageSpec] = None

    @property
    def name(self) -> str:
        return (self.new or self.old).name

    def describe(self) -> str:
        if self.kind is OpKind.UPDATE:
            return f"{self.name}: {short(self.old.pinned_commit)} -> {short(self.new.pinned_commit)}"
        if self.kind is OpKind.REMOVE:
            return self.name
        return f"{self.name}: {short(self.new.pinned_commit)}"


class InstallPlan:
    def __init__(self, operations: List[Operation]):
        self.operations = list(operations)

    def __iter__(self):
        return iter(self.operations)

    def __len__(self):
        return len(self.operations)

    def __repr__(self):
        return f"InstallPlan({self.operations!r})"

    @property
    def is_noop(self) -> bool:
        return all(op.kind is OpKind.NOOP for op in self.operations)


def plan(current: Lockfile, target: Lockfile) -> InstallPlan:
    """Compute the operations that move ``current`` to ``target``.

    Renames are not detected: they show up as a Remove plus an Add.
    """
    ops = []
    for name in set(current.packages) | set(target.packages):
        old = current.packages.get(name)
        new = target.packages.get(name)
        if old is None:
            ops.append(Operation(OpKind.ADD, new=new))
        elif new is None:
            ops.append(Operation(OpKind.REMOVE, old=old))
        elif (old.source, old.pinned_commit) != (new.source, new.pinned_commit):
            ops.append(Operation(OpKind.UPDATE, old=old, new=new))
        else:
            ops.append(Operation(OpKind.NOOP, old=old, new=new))
    ops.sort(key=lambda op: (KIND_ORDER.index(op.kind), op.name))
    return InstallPlan(ops)


# ==================== Git Source Backend ====================
# libgit2 reports missing paths and objects as KeyError/OSError besides GitError
GIT_ERRORS = (pygit2.GitError, KeyError, OSError)


class FetchProgress(pygit2.RemoteCallbacks):
    def __init__(self, name):
        super().__init__()
        self.name = name

    def transfer_progress(self, stats):
        if stats.total_objects:
            logger(
                f"{self.name}: {stats.received_objects}/{stats.total_objects} objects, "
                f"{stats.indexed_deltas}/{stats.total_deltas} deltas",
                "DEBUG",
            )


class GitSource:
    """Clone, check out and remove package repositories in-process with pygit2.

    Every git operation goes through libgit2; no external process is started.
    """

    def clone(self, spec: PackageSpec, dest: str):
        if os.path.isdir(os.path.join(dest, ".git")):
            logger(f"{spec.name}: repository already present, checking out", "DEBUG")
            self.checkout(dest, spec.pinned_commit, source=spec.source)
            return
        if os.path.exists(dest) and (not os.path.isdir(dest) or os.listdir(dest)):
            raise FilesystemError(f"{dest} exists and is not a git repository")

        parent = os.path.dirname(os.path.abspath(dest))
        try:
            ensure_dir(parent)
            tmpdir = tempfile.mkdtemp(prefix=f".{spec.name}-", dir=parent)
        except OSError as e:
            raise FilesystemError(f"Could not create {parent}: {e}") from e

        try:
            logger(f"Cloning {spec.source} into {dest}")
            try:
                repo = pygit2.clone_repository(
                    spec.source, tmpdir, callbacks=FetchProgress(spec.name)
                )
            except GIT_ERRORS as e:
                raise NetworkError(f"Could not clone {spec.source}: {e}") from e
            try:
                self._ensure_commit(repo, spec.name, spec.pinned_commit)
                self._detach(repo, spec.pinned_commit)
            finally:
                repo.free()
            try:
                if os.path.isdir(dest):
                    os.rmdir(dest)
                os.rename(tmpdir, dest)
            except OSError as e:
                raise FilesystemError(f"Could not move clone into {dest}: {e}") from e
        finally:
            if os.path.exists(tmpdir):
                shutil.rmtree(tmpdir, ignore_errors=True)

    def checkout(self, dest: str, pinned_commit: str, source: Optional[str] = None):
        """Reset ``dest`` to ``pinned_commit``, fetching only when it is not local."""
        repo = self._open(dest)
        try:
            name = os.path.basename(dest)
            if source is not None and self._origin(repo, dest).url != source:
                logger(f"{name}: switching origin to {source}")
                repo.remotes.set_url("origin", source)
            self._ensure_commit(repo, name, pinned_commit)
            self._detach(repo, pinned_commit)
        finally:
            repo.free()

    def remove(self, dest: str):
        if not os.path.exists(dest):
            logger(f"{dest} already absent", "DEBUG")
            return
        try:
            shutil.rmtree(dest)
        except OSError as e:
            raise FilesystemError(f"Could not remove {dest}: {e}") from e

    def has_commit(self, repo, commit) -> bool:
        return isinstance(repo.get(commit), pygit2.Commit)

    def _open(self, dest):
        # only dest itself, never a repository further up the tree
        if not os.path.isdir(os.path.join(dest, ".git")):
            raise FilesystemError(f"{dest} is not a git repository")
        try:
            return pygit2.Repository(dest)
        except GIT_ERRORS as e:
            raise FilesystemError(f"Could not open repository {dest}: {e}") from e

    def _origin(self, repo, dest):
        try:
            return repo.remotes["origin"]
        except KeyError as e:
            raise FilesystemError(f"{dest} has no origin remote") from e

    def _ensure_commit(self, repo, name, commit):
        if self.has_commit(repo, commit):
            logger(f"{name}: {short(commit)} available locally", "DEBUG")
            return

        origin = self._origin(repo, repo.workdir)
        logger(f"Fetching {name} from {origin.url}")
        try:
            origin.fetch(callbacks=FetchProgress(name))
        except GIT_ERRORS as e:
            raise NetworkError(f"Could not fetch {origin.url}: {e}") from e
        if self.has_commit(repo, commit):
            return

        # commit may not be reachable from any branch
        try:
            origin.fetch([commit], callbacks=FetchProgress(name))
        except GIT_ERRORS as e:
            logger(f"{name}: direct fetch of {short(commit)} refused: {e}", "DEBUG")
        if not self.has_commit(repo, commit):
            raise GitReferenceError(f"{name}: commit {commit} not found in {origin.url}")

    def _detach(self, repo, commit):
        target = repo.get(commit)
        try:
            repo.checkout_tree(target, strategy=CheckoutStrategy.FORCE)
            repo.set_head(target.id)
        except GIT_ERRORS as e:
            raise FilesystemError(f"Could not check out {commit}: {e}") from e


# ==================== Build Hooks ====================
class Builder:
    """Run a package's build command inside its checked-out directory."""

    def build(self, spec: PackageSpec, dest: str):
        if not spec.build:
            return
        logger(f"{spec.name}: running build `{spec.build}`")
        try:
            result = run_cmd(spec.build, cwd=dest)
        except OSError as e:
            raise BuildError(f"{spec.name}: could not run build command: {e}") from e
        for line in result.stdout.splitlines():
            logger(f"{spec.name}: {line}", "DEBUG")
        for line in result.stderr.splitlines():
            logger(f"{spec.name}: {line}", "WARNING")
        if result.returncode != 0:
            raise BuildError(f"{spec.name}: build command exited with status {result.returncode}")


# ==================== Parallel Installer ====================
class ResultStatus(enum.Enum):
    INSTALLED = "installed"
    UPDATED = "updated"
    REMOVED = "removed"
    UNCHANGED = "unchanged"
    FAILED = "failed"


@dataclass(frozen=True)
class InstallResult:
    operation: Operation
    status: ResultStatus
    error: Optional[AlpackaError] = None

    @property
    def name(self) -> str:
        return self.operation.name

    def describe(self) -> str:
        line = f"{self.status.value:<9} {self.operation.describe()}"
        if self.error is not None:
            line += f" ({self.error})"
        return line


class InstallReport:
    def __init__(self, results: List[InstallResult]):
        self.results = list(results)

    def __iter__(self):
        return iter(self.results)

    def __len__(self):
        return len(self.results)

    def __getitem__(self, name) -> InstallResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(name)

    @property
    def failures(self) -> List[InstallResult]:
        return [r for r in self.results if r.status is ResultStatus.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def summary(self) -> List[str]:
        return [result.describe() for result in self.results]


class Installer:
    """Apply an InstallPlan with a bounded pool of worker threads.

    Each task owns exactly one package directory, so tasks never share
    mutable state; every operation yields exactly one InstallResult. A
    package with a build command is built right after its checkout.
    """

    def __init__(self, source=None, pack_dir=PACK_DIR, jobs=None, builder=None):
        self.source = source or GitSource()
        self.builder = builder or Builder()
        self.pack_dir = pack_dir
        self.jobs = default_jobs() if jobs is None else parse_jobs(jobs, "jobs")

    def package_dir(self, spec: PackageSpec) -> str:
        return os.path.join(self.pack_dir, spec.install_path)

    def apply(self, install_plan: InstallPlan) -> InstallReport:
        results: Dict[str, InstallResult] = {}
        with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="alpacka") as pool:
            futures = {pool.submit(self._run, op): op for op in install_plan}
            for future in as_completed(futures):
                result = future.result()
                results[result.name] = result
        return InstallReport([results[op.name] for op in install_plan])

    def _run(self, op: Operation) -> InstallResult:
        try:
            status = self._execute(op)
        except AlpackaError as e:
            logger(f"{op.name}: {op.kind.value} failed: {e}", "ERROR")
            return InstallResult(op, ResultStatus.FAILED, e)
        if status is not ResultStatus.UNCHANGED:
            logger(f"{status.value} {op.describe()}", "DEBUG")
        return InstallResult(op, status)

    def _execute(self, op: Operation) -> ResultStatus:
        if op.kind is OpKind.NOOP:
            return ResultStatus.UNCHANGED
        if op.kind is OpKind.REMOVE:
            self.source.remove(self.package_dir(op.old))
            return ResultStatus.REMOVED

        dest = self.package_dir(op.new)
        if op.kind is OpKind.ADD:
            self.source.clone(op.new, dest)
            status = ResultStatus.INSTALLED
        elif os.path.isdir(dest):
            self.source.checkout(dest, op.new.pinned_commit, source=op.new.source)
            status = ResultStatus.UPDATED
        else:
            self.source.clone(op.new, dest)
            status = ResultStatus.UPDATED
        self.builder.build(op.new, dest)
        return status


# ==================== Transaction ====================
class Transaction:
    """Plan, apply and commit one install or rollback against a store."""

    def __init__(self, store: GenerationStore, installer: Installer):
        self.store = store
        self.installer = installer

    def install(self, target: Lockfile) -> InstallReport:
        current = self.store.active()
        install_plan = plan(current, target)
        report = self.installer.apply(install_plan)
        # an all-Noop plan still records a changed reference or build command
        if install_plan.is_noop and dict(target.packages) == dict(current.packages):
            logger("Everything is up to date.")
            return report
        if not report.ok:
            logger(
                f"{len(report.failures)} package(s) failed; "
                f"active generation stays {current.id}",
                "WARNING",
            )
            return report
        generation_id = self.store.append(target)
        self.store.set_active(generation_id)
        logger(f"Installation complete. Generation {generation_id} is active.")
        return report

    def rollback(self, generation_id: int, repair: bool = False) -> InstallReport:
        """Return to a stored generation without resolving anything.

        With ``repair`` the active pointer is not consulted, so a corrupted
        pointer can be replaced: every package of the target is re-checked
        out and the pointer is rewritten.
        """
        target = self.store.get(generation_id)
        current = Lockfile.empty() if repair else self.store.active()
        report = self.installer.apply(plan(current, target))
        if not report.ok:
            logger(
                f"Rollback to {generation_id} incomplete; active generation stays {current.id}",
                "WARNING",
            )
            return report
        if repair or current.id != generation_id:
            self.store.set_active(generation_id)
        logger(f"Rolled back to generation {generation_id}")
        return report


# ==================== CLI ====================
def _print_report(report: InstallReport):
    for line in report.summary():
        print(f"  {line}")


def _jobs_arg(value):
    try:
        return parse_jobs(value, "--jobs")
    except FormatError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _list_generations(store: GenerationStore, fmt: str):
    generations = store.list()
    active_id = store.active_id()
    if fmt == "json":
        payload = {
            str(gen.id): {
                "id": gen.id,
                "parent_id": gen.parent_id,
                "created_at": gen.created_at,
                "active": gen.id == active_id,
                "packages": gen.to_document(),
            }
            for gen in generations
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return
    if not generations:
        print("No generations.")
        return
    for gen in generations:
        marker = " (active)" if gen.id == active_id else ""
        print(
            f"Generation {gen.id}{marker} | parent {gen.parent_id} | "
            f"{len(gen.packages)} packages | {gen.created_at}"
        )


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="alpacka", description="alpacka - generation-based plugin manager for Neovim"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    parser.add_argument(
        "-j", "--jobs", type=_jobs_arg, help="Number of parallel workers (env: ALPACKA_JOBS)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # install
    install = subparsers.add_parser("install", help="Install the packages of a lockfile")
    install.add_argument("lockfile", help="Lockfile document (JSON, or YAML by extension)")

    # rollback
    rollback = subparsers.add_parser("rollback", help="Switch back to a stored generation")
    rollback.add_argument("generation", type=int)
    rollback.add_argument(
        "--repair", action="store_true", help="Ignore the current active pointer (e.g. if corrupt)"
    )

    # list
    listing = subparsers.add_parser("list", help="List stored generations")
    listing.add_argument("--format", choices=["human", "json"], default="human")

    # show
    show = subparsers.add_parser("show", help="Print a generation as a lockfile document")
    show.add_argument("generation", type=int, nargs="?", help="Defaults to the active one")

    args = parser.parse_args(argv)
    setup_logging("DEBUG" if args.verbose else "INFO")

    store = None
    try:
        store = GenerationStore()
        if args.command == "list":
            _list_generations(store, args.format)
            return 0
        if args.command == "show":
            if args.generation is None:
                gen = store.active()
                if gen.id is None:
                    print("No active generation.")
                    return 0
            else:
                gen = store.get(args.generation)
            sys.stdout.write(dump_lockfile(gen))
            return 0

        trans = Transaction(store, Installer(jobs=args.jobs))
        if args.command == "install":
            report = trans.install(load_lockfile_file(args.lockfile))
        else:
            report = trans.rollback(args.generation, repair=args.repair)
        _print_report(report)
        return 0 if report.ok else 1
    except AlpackaError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        if store is not None:
            store.close()


if __name__ == "__main__":
    sys.exit(main())
