import logging

from conftest import FakeShell

from pve_ct_backup import CommandResult, ContainerState, Locality, Pct, detect_locality, parse_pct_status


def test_stopped_container_is_local_without_exec_probe():
    shell = FakeShell().add_container("110", state="stopped")
    assert detect_locality(Pct(shell), "110", "pve1") is Locality.LOCAL
    assert shell.ran("pct exec 110") == []


def test_running_and_reachable_is_local():
    shell = FakeShell().add_container("111", state="running")
    assert detect_locality(Pct(shell), "111", "pve1") is Locality.LOCAL
    probe = shell.ran("pct exec 111 -- echo test")
    assert len(probe) == 1
    assert probe[0][:2] == ["timeout", "10"]


def test_running_but_probe_fails_is_not_local():
    # HA relocated the container mid-failover; config still visible here
    shell = FakeShell().add_container("112", state="running", reachable=False)
    assert detect_locality(Pct(shell), "112", "pve1") is Locality.REMOTE


def test_unconfigured_container_is_absent():
    shell = FakeShell().on("pct config 113", CommandResult(2, "", "Configuration file does not exist"))
    assert detect_locality(Pct(shell), "113", "pve1") is Locality.ABSENT
    assert shell.ran("pct status 113") == []


def test_other_status_is_not_actionable():
    shell = FakeShell().add_container("114")
    shell.on("pct status 114", CommandResult(0, "status: paused\n"))
    assert detect_locality(Pct(shell), "114", "pve1") is Locality.REMOTE


def test_parse_pct_status():
    assert parse_pct_status("status: running\n") is ContainerState.RUNNING
    assert parse_pct_status("status: stopped") is ContainerState.STOPPED
    assert parse_pct_status("status: paused") is ContainerState.UNKNOWN
    assert parse_pct_status("") is ContainerState.UNKNOWN


def test_local_log_names_configured_node(caplog):
    caplog.set_level(logging.INFO)
    shell = FakeShell().add_container("115", state="running")
    detect_locality(Pct(shell), "115", "pve-node-b")
    assert "Container 115 is running locally on pve-node-b" in caplog.messages
