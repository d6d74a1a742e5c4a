import pytest

from cutout_service.resources import HandleRegistry, HandleReleased


def test_create_and_read(registry):
    handle = registry.create(b"abc", "image/png")
    assert handle.id.startswith("blob:")
    assert handle.read() == b"abc"
    assert handle.size == 3
    assert registry.live_handles() == [handle.id]


def test_release_exactly_once(registry):
    handle = registry.create(b"abc")
    assert handle.release() is True
    assert handle.release() is False
    assert handle.released
    assert len(registry) == 0


def test_read_after_release(registry):
    handle = registry.create(b"abc")
    handle.release()
    with pytest.raises(HandleReleased):
        handle.read()


def test_ids_unique():
    registry = HandleRegistry(prefix="blob:test/")
    ids = {registry.create(b"x").id for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("blob:test/") for i in ids)
