import pytest

from app.shop.storage import LocalStorage, StorageError, normalize_key, storage_from_config


def test_normalize_key():
    assert normalize_key("/products/a.png") == "products/a.png"
    assert normalize_key("products\\b.png") == "products/b.png"
    for bad in ("", "/", "../etc/passwd", "products/../../x"):
        with pytest.raises(StorageError):
            normalize_key(bad)


def test_local_storage_roundtrip(tmp_path):
    storage = storage_from_config({"STORAGE_BACKEND": "local", "STORAGE_LOCAL_ROOT": str(tmp_path)})
    assert isinstance(storage, LocalStorage)

    storage.put_bytes("products/x.png", b"\x89PNG")
    assert storage.exists("products/x.png")
    assert storage.content_type("products/x.png") == "image/png"
    with storage.open("products/x.png") as fh:
        assert fh.read() == b"\x89PNG"

    storage.delete("products/x.png")
    assert not storage.exists("products/x.png")
    storage.delete("products/x.png")


def test_unknown_backend_rejected():
    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})
