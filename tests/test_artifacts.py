import io
import tarfile
from pathlib import Path

import pytest

from stageci.artifacts import ArtifactStore, parse_duration, prune_expired
from stageci.errors import ArtifactError, MissingArtifactError
from stageci.model import ArtifactSpec


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.parametrize(
    "text,seconds",
    [
        ("1 month", 2592000.0),
        ("2 days 3 hrs", 183600.0),
        ("3600", 3600.0),
        ("1h 30min", 5400.0),
        ("1 week, 1 day", 691200.0),
        (None, None),
        ("never", None),
    ],
)
def test_parse_duration(text, seconds):
    assert parse_duration(text) == seconds


@pytest.mark.parametrize("bad", ["soon", "3 fortnights", "1 month later"])
def test_parse_duration_rejects_garbage(bad):
    with pytest.raises(ValueError):
        parse_duration(bad)


@pytest.fixture
def ws(tmp_path):
    w = tmp_path / "ws"
    w.mkdir()
    (w / "ffsend-x86_64-unknown-linux-musl").write_text("binary", encoding="utf-8")
    (w / "notes.txt").write_text("not exported", encoding="utf-8")
    return w


def test_publish_fetch_materialize(tmp_path, ws):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    spec = ArtifactSpec(paths=("ffsend-$RUST_TARGET",), name="ffsend-$RUST_TARGET")
    handle = store.publish("build-musl", ws, spec, {"RUST_TARGET": "x86_64-unknown-linux-musl"})

    assert handle.files == ("ffsend-x86_64-unknown-linux-musl",)
    assert handle.name == "ffsend-x86_64-unknown-linux-musl"
    assert store.fetch("build-musl", requested_by="test-public") == handle

    dest = tmp_path / "downstream"
    assert store.materialize(handle, dest) == ["ffsend-x86_64-unknown-linux-musl"]
    assert (dest / "ffsend-x86_64-unknown-linux-musl").read_text() == "binary"
    assert not (dest / "notes.txt").exists()


def test_job_without_declaration_publishes_empty_handle(tmp_path, ws):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    handle = store.publish("test-cargo", ws)
    assert handle.files == ()
    assert handle.archive is None
    assert store.has("test-cargo")
    assert store.materialize(handle, tmp_path / "x") == []


def test_fetch_of_unpublished_job_is_missing(tmp_path):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    with pytest.raises(MissingArtifactError) as exc:
        store.fetch("build", requested_by="test")
    assert exc.value.job == "test"
    assert exc.value.upstream == "build"
    assert exc.value.kind == "missing_artifact"


def test_expired_artifact_is_missing(tmp_path, ws):
    clock = FakeClock()
    store = ArtifactStore(tmp_path / "artifacts", "run1", clock=clock)
    store.publish("build", ws, ArtifactSpec(paths=("notes.txt",), expire_in="1 hour"))
    clock.now += 3599
    store.fetch("build")
    clock.now += 1
    with pytest.raises(MissingArtifactError, match="expired"):
        store.fetch("build")


def test_publish_is_once_per_job(tmp_path, ws):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    store.publish("build", ws)
    with pytest.raises(ArtifactError, match="already published"):
        store.publish("build", ws)


def test_runs_are_isolated(tmp_path, ws):
    first = ArtifactStore(tmp_path / "artifacts", "run1")
    second = ArtifactStore(tmp_path / "artifacts", "run2")
    handle = first.publish("build", ws, ArtifactSpec(paths=("notes.txt",)))

    assert not second.has("build")
    with pytest.raises(MissingArtifactError):
        second.fetch("build")
    with pytest.raises(ArtifactError, match="run1"):
        second.materialize(handle, tmp_path / "x")


def test_archive_escaping_the_workspace_is_refused(tmp_path, ws):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    handle = store.publish("build", ws, ArtifactSpec(paths=("notes.txt",)))

    payload = b"outside"
    info = tarfile.TarInfo("../escaped.txt")
    info.size = len(payload)
    with tarfile.open(handle.archive, mode="w:gz") as tar:
        tar.addfile(info, io.BytesIO(payload))

    with pytest.raises(ArtifactError, match="could not unpack"):
        store.materialize(handle, tmp_path / "dest")
    assert not (tmp_path / "escaped.txt").exists()


def test_invalid_expire_in_fails_publish(tmp_path, ws):
    store = ArtifactStore(tmp_path / "artifacts", "run1")
    with pytest.raises(ArtifactError):
        store.publish("build", ws, ArtifactSpec(paths=("notes.txt",), expire_in="whenever"))


def test_prune_expired(tmp_path, ws):
    clock = FakeClock()
    store = ArtifactStore(tmp_path / "artifacts", "run1", clock=clock)
    short = store.publish("short", ws, ArtifactSpec(paths=("notes.txt",), expire_in="1 day"))
    store.publish("forever", ws, ArtifactSpec(paths=("notes.txt",)))

    removed = prune_expired(tmp_path / "artifacts", now=clock.now + 2 * 86400)
    assert removed == ["run1/short"]
    assert not Path(short.archive).exists()
