import pytest

from helpers import encode_file


@pytest.fixture
def write_file(tmp_path):
    """Write raw bytes to a file under tmp_path and return its path."""
    def _write(name, data: bytes):
        path = tmp_path / name
        path.write_bytes(data)
        return path
    return _write


@pytest.fixture
def write_blocks(write_file):
    """Write a block-manager file holding the given payloads."""
    def _write(name, payloads):
        return write_file(name, encode_file(payloads))
    return _write
