"""Tests for nido.state module."""

from __future__ import annotations

import json

import pytest

from nido.exceptions import NotFoundError
from nido.models import VMState
from nido.state import StateStore


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "run")


class TestStateStore:
    def test_save_then_load(self, store):
        store.save(VMState(name="box", pid=10, ssh_port=50022, vnc_port=59000, gui=True, ssh_user="alpine"))
        record = store.load("box")
        assert record == VMState(name="box", pid=10, ssh_port=50022, vnc_port=59000, gui=True, ssh_user="alpine")

    def test_save_overwrites_wholesale(self, store):
        store.save(VMState(name="box", pid=10, ssh_port=50022, ssh_user="alpine"))
        store.save(VMState(name="box", pid=0, ssh_port=50023))
        data = json.loads(store.state_path("box").read_text())
        assert data == {"name": "box", "pid": 0, "ssh_port": 50023, "vnc_port": 0, "gui": False}

    def test_load_missing(self, store):
        with pytest.raises(NotFoundError, match="No state record"):
            store.load("ghost")

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"pid": "abc"}'])
    def test_load_malformed(self, store, content):
        store.run_dir.mkdir(parents=True)
        store.state_path("bad").write_text(content)
        with pytest.raises(NotFoundError):
            store.load("bad")

    def test_load_fills_missing_name(self, store):
        store.run_dir.mkdir(parents=True)
        store.state_path("old").write_text('{"pid": 0, "ssh_port": 50030}')
        assert store.load("old").name == "old"

    def test_delete_and_exists(self, store):
        store.save(VMState(name="box"))
        assert store.exists("box")
        store.delete("box")
        store.delete("box")
        assert not store.exists("box")

    def test_reserved_ports_across_records(self, store):
        store.save(VMState(name="a", ssh_port=50022))
        store.save(VMState(name="b", ssh_port=50023, vnc_port=59000))
        store.save(VMState(name="c"))
        store.state_path("broken").write_text("garbage")
        assert store.reserved_ports() == {50022, 50023, 59000}

    def test_reserved_ports_without_run_dir(self, store):
        assert store.reserved_ports() == set()


class TestPidFiles:
    def test_read_pid(self, store):
        store.run_dir.mkdir(parents=True)
        store.pid_path("box").write_text("1234\n")
        assert store.read_pid("box") == 1234

    @pytest.mark.parametrize("content", ["", "abc", "0", "-5"])
    def test_read_pid_invalid(self, store, content):
        store.run_dir.mkdir(parents=True)
        store.pid_path("box").write_text(content)
        assert store.read_pid("box") is None

    def test_read_pid_missing(self, store):
        assert store.read_pid("box") is None

    def test_clear_runtime_files(self, store):
        store.run_dir.mkdir(parents=True)
        store.pid_path("box").write_text("1")
        store.qmp_path("box").write_text("")
        store.clear_runtime_files("box")
        assert not store.pid_path("box").exists()
        assert not store.qmp_path("box").exists()

    def test_paths(self, store):
        assert store.pid_path("box").name == "box.pid"
        assert store.qmp_path("box").name == "box.qmp"
        assert store.serial_log_path("box").name == "box.serial.log"
        assert store.state_path("box").name == "box.json"
