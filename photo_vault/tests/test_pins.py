import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pins import PinSet


def test_toggle_persists(tmp_path):
    path = tmp_path / "pins.json"
    pins = PinSet(path)
    assert pins.toggle("n1") is True
    assert "n1" in PinSet(path)
    assert pins.toggle("n1") is False
    assert "n1" not in PinSet(path)


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "pins.json"
    path.write_text("{nope")
    assert PinSet(path).ids == set()


def test_non_list_loads_empty(tmp_path):
    path = tmp_path / "pins.json"
    path.write_text('{"a": 1}')
    assert PinSet(path).ids == set()


def test_discard(tmp_path):
    pins = PinSet(tmp_path / "pins.json")
    pins.toggle("n1")
    pins.discard("n1")
    pins.discard("never-pinned")
    assert pins.ids == set()
