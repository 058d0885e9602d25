from pathlib import Path

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database.base import Base
from database import models  # noqa: F401
from utils.storage_paths import StoragePaths


class RecordingPublisher:
    """Collects published file events in memory."""

    def __init__(self):
        self.events = []

    def publish(self, file_id, kind, snapshot):
        self.events.append((file_id, kind, snapshot))

    def statuses(self, file_id):
        return [
            snapshot.processing_status.value
            for event_id, _, snapshot in self.events
            if event_id == file_id
        ]


@pytest.fixture
def session_factory(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'catalog.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(tmp_path: Path) -> StoragePaths:
    paths = StoragePaths(tmp_path / "storage")
    paths.ensure_directories()
    return paths


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


def _make_image_bytes(tmp_path: Path, size=(640, 480), fmt="PNG", name="upload") -> bytes:
    path = tmp_path / f"{name}.{fmt.lower()}"
    image = Image.new("RGB", size, color=(200, 40, 40))
    image.save(path, format=fmt)
    return path.read_bytes()


@pytest.fixture
def png_bytes(tmp_path: Path) -> bytes:
    return _make_image_bytes(tmp_path)


@pytest.fixture
def make_image(tmp_path: Path):
    def _make(size=(640, 480), fmt="PNG", name="upload") -> bytes:
        return _make_image_bytes(tmp_path, size=size, fmt=fmt, name=name)

    return _make
