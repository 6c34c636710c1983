import shutil
from pathlib import Path

import pytest
from PIL import Image

from engine.errors import StorageError
from engine.process import ProcessRunner
from engine.s3 import ArtifactStore


class FakeStore:
    """In-memory stand-in for ArtifactStore: references map to local files."""

    def __init__(self):
        self.objects: dict[str, Path] = {}
        self.uploads: dict[str, bytes] = {}
        self.fail_uploads = False

    def put(self, ref: str, source: Path) -> str:
        self.objects[ref] = Path(source)
        return ref

    def download_by_reference(self, ref: str, local_path: Path) -> Path:
        if ref not in self.objects:
            raise StorageError(f"Failed to download {ref}: not found")
        local_path = Path(local_path)
        local_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(self.objects[ref], local_path)
        return local_path

    def read_bytes(self, ref: str) -> bytes:
        if ref not in self.objects:
            raise StorageError(f"Failed to read {ref}")
        return self.objects[ref].read_bytes()

    def exists(self, ref: str) -> bool:
        return ref in self.objects

    def upload_local_file(self, local_path: Path, storage_path: str, content_type=None) -> str:
        if self.fail_uploads:
            raise StorageError(f"Failed to upload {local_path} to {storage_path}: bucket unavailable")
        self.uploads[storage_path] = Path(local_path).read_bytes()
        return f"https://cdn.test/{storage_path}"

    stat_local_file = staticmethod(ArtifactStore.stat_local_file)


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a solid-colour image; returns its path."""
    counter = {"n": 0}

    def _make(size=(640, 480), color=(200, 30, 30), suffix=".jpg", mode="RGB", name=None):
        counter["n"] += 1
        path = tmp_path / "inputs" / (name or f"img-{counter['n']}{suffix}")
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new(mode, size, color).save(path)
        return path

    return _make


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def runner():
    return ProcessRunner()


@pytest.fixture
def scratch_root(settings, tmp_path):
    root = tmp_path / "scratch"
    settings.SCRATCH_ROOT = root
    return root
