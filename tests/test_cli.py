"""Tests for nido.cli module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from nido import cli
from nido.catalog import Catalog
from nido.exceptions import NotFoundError
from nido.models import CachedImage, CacheStats, VMOptions, VMStatus


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("NIDO_HOME", "NIDO_TEMPLATE_DIR", "NIDO_IMAGE_DIR", "NIDO_SSH_USER", "NIDO_MEMORY"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def manager():
    mgr = MagicMock()
    mgr.list.return_value = []
    mgr.ssh_command.return_value = "ssh -p 50022 vmuser@127.0.0.1"
    return mgr


def _run(manager, tmp_path, *argv):
    with patch("nido.cli.build_manager", return_value=manager) as build:
        rc = cli.main(["--root", str(tmp_path / "nido"), *argv])
    return rc, build


class TestMain:
    def test_root_option_sets_layout(self, manager, tmp_path):
        rc, build = _run(manager, tmp_path, "list")
        assert rc == 0
        cfg = build.call_args[0][0]
        assert cfg.root_dir == tmp_path / "nido"
        assert cfg.template_dir == tmp_path / "nido" / "backups"
        assert cfg.ssh_dir is not None

    def test_config_file_applied(self, manager, tmp_path):
        config = tmp_path / "custom.yaml"
        config.write_text("ssh_user: alice\nmemory_mb: 1024\n")
        rc, build = _run(manager, tmp_path, "--config", str(config), "list")
        assert rc == 0
        cfg = build.call_args[0][0]
        assert (cfg.ssh_user, cfg.memory_mb) == ("alice", 1024)

    def test_missing_config_file(self, manager, tmp_path):
        with patch("nido.cli.log") as mock_log:
            rc, _ = _run(manager, tmp_path, "--config", str(tmp_path / "absent.yaml"), "list")
        assert rc == 1
        level, message = mock_log.call_args[0]
        assert level == "ERROR"
        assert "Config file missing" in message

    def test_manager_error_returns_one(self, manager, tmp_path):
        manager.start.side_effect = NotFoundError("Disk image not found: x")
        with patch("nido.cli.log") as mock_log:
            rc, _ = _run(manager, tmp_path, "start", "x")
        assert rc == 1
        mock_log.assert_called_once_with("ERROR", "Disk image not found: x")

    def test_keyboard_interrupt(self, manager, tmp_path):
        manager.list.side_effect = KeyboardInterrupt
        with patch("nido.cli.log"):
            rc, _ = _run(manager, tmp_path, "list")
        assert rc == 130

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.main([])

    def test_real_manager_on_empty_root(self, tmp_path, capsys):
        rc = cli.main(["--root", str(tmp_path / "nido"), "templates"])
        assert rc == 0
        assert capsys.readouterr().out == ""


class TestVMCommands:
    def test_spawn_passes_options(self, manager, tmp_path, capsys):
        user_data = tmp_path / "ud.yaml"
        rc, _ = _run(
            manager,
            tmp_path,
            "spawn", "web", "ubuntu:24.04", "--gui", "--memory", "4096", "--cpus", "2",
            "--user", "alice", "--user-data", str(user_data),
        )
        assert rc == 0
        manager.spawn.assert_called_once_with(
            "web",
            "ubuntu:24.04",
            VMOptions(memory_mb=4096, vcpus=2, user_data_path=user_data, gui=True, ssh_user="alice"),
        )
        assert "ssh -p 50022 vmuser@127.0.0.1" in capsys.readouterr().out

    def test_spawn_default_source(self, manager, tmp_path):
        _run(manager, tmp_path, "spawn", "web")
        assert manager.spawn.call_args[0][1] is None

    def test_stop_graceful_by_default(self, manager, tmp_path):
        _run(manager, tmp_path, "stop", "web")
        manager.stop.assert_called_once_with("web", graceful=True)

    def test_stop_force(self, manager, tmp_path):
        _run(manager, tmp_path, "stop", "web", "--force")
        manager.stop.assert_called_once_with("web", graceful=False)

    def test_delete(self, manager, tmp_path):
        _run(manager, tmp_path, "delete", "web")
        manager.delete.assert_called_once_with("web")

    def test_prune(self, manager, tmp_path):
        manager.prune.return_value = 3
        with patch("nido.cli.log") as mock_log:
            _run(manager, tmp_path, "prune")
        mock_log.assert_called_once_with("INFO", "Removed 3 stopped VM(s)")

    def test_list_table(self, manager, tmp_path, capsys):
        manager.list.return_value = [
            VMStatus(name="web", state="running", pid=10, ssh_port=50022, vnc_port=59000),
            VMStatus(name="db", state="stopped", ssh_port=50023),
        ]
        _run(manager, tmp_path, "list")
        out = capsys.readouterr().out.splitlines()
        assert "web" in out[0] and "running" in out[0] and "vnc=59000" in out[0]
        assert "db" in out[1] and "stopped" in out[1] and "vnc=" not in out[1]

    def test_list_empty(self, manager, tmp_path):
        manager.list.return_value = []
        with patch("nido.cli.log") as mock_log:
            _run(manager, tmp_path, "list")
        mock_log.assert_called_once_with("INFO", "No VMs found")

    def test_ssh(self, manager, tmp_path, capsys):
        _run(manager, tmp_path, "ssh", "web")
        assert capsys.readouterr().out.strip() == "ssh -p 50022 vmuser@127.0.0.1"

    def test_template(self, manager, tmp_path):
        _run(manager, tmp_path, "template", "web", "golden")
        manager.create_template.assert_called_once_with("web", "golden")


class TestDoctor:
    def test_all_pass(self, manager, tmp_path, capsys):
        manager.doctor.return_value = ["Binary: QEMU         [PASS] /usr/bin/qemu"]
        rc, _ = _run(manager, tmp_path, "doctor")
        assert rc == 0
        assert "[PASS]" in capsys.readouterr().out

    def test_failure_sets_exit_code(self, manager, tmp_path):
        manager.doctor.return_value = ["Binary: QEMU         [PASS] ok", "Accel: KVM           [FAIL] /dev/kvm"]
        rc, _ = _run(manager, tmp_path, "doctor")
        assert rc == 1


class TestImageCommands:
    def test_images(self, manager, tmp_path, capsys, catalog_payload):
        manager.catalog.load.return_value = Catalog.from_dict(catalog_payload)
        _run(manager, tmp_path, "images")
        out = capsys.readouterr().out
        assert "ubuntu:24.04 (latest, noble, lts)" in out
        assert "alpine:3.20" in out
        manager.catalog.refresh.assert_not_called()

    def test_images_refresh(self, manager, tmp_path, catalog_payload):
        manager.catalog.refresh.return_value = Catalog.from_dict(catalog_payload)
        _run(manager, tmp_path, "images", "--refresh")
        manager.catalog.refresh.assert_called_once_with()

    def test_pull(self, manager, tmp_path, capsys):
        manager.catalog.pull.return_value = (None, None, tmp_path / "alpine-3.20.qcow2")
        _run(manager, tmp_path, "pull", "alpine")
        manager.catalog.pull.assert_called_once_with("alpine")
        assert "alpine-3.20.qcow2" in capsys.readouterr().out

    def test_cache_ls(self, manager, tmp_path, capsys):
        manager.cached_images.return_value = [
            CachedImage(name="alpine", version="3.20", path=tmp_path / "a.qcow2", size=2048, mtime=0)
        ]
        manager.cache_stats.return_value = CacheStats(total_images=1, total_size=2048, oldest=0, newest=0)
        with patch("nido.cli.log") as mock_log:
            _run(manager, tmp_path, "cache")
        assert "alpine:3.20" in capsys.readouterr().out
        mock_log.assert_any_call("INFO", "1 cached image(s), 2.0 KB total")

    def test_cache_prune_unused(self, manager, tmp_path):
        manager.cache_prune.return_value = 2
        _run(manager, tmp_path, "cache", "prune", "--unused")
        manager.cache_prune.assert_called_once_with(unused_only=True)

    def test_cache_rm(self, manager, tmp_path):
        _run(manager, tmp_path, "cache", "rm", "alpine:3.20")
        manager.remove_cached_image.assert_called_once_with("alpine", "3.20")

    def test_cache_rm_requires_version(self, manager, tmp_path):
        with patch("nido.cli.log") as mock_log:
            rc, _ = _run(manager, tmp_path, "cache", "rm", "alpine")
        assert rc == 1
        assert "Expected name:version" in mock_log.call_args[0][1]
        manager.remove_cached_image.assert_not_called()


def test_build_manager_wires_catalog(config):
    manager = cli.build_manager(config)
    assert manager.catalog.cache_dir == config.image_dir
    assert manager.catalog.url == config.catalog_url
    assert manager.catalog.ttl == config.catalog_ttl
