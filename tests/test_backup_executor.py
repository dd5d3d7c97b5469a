from conftest import FakeShell

from pve_ct_backup import (BACKUP_TIMEOUT_SECONDS, KIND_BACKUP_FAILED, KIND_BACKUP_TIMEOUT, CommandResult, Pct,
                           build_vzdump_command, run_backup)


def test_vzdump_command_line(make_config, dirs):
    cmd = build_vzdump_command(make_config(compression="zstd"), "102")
    assert cmd[:3] == ["timeout", str(BACKUP_TIMEOUT_SECONDS), "vzdump"]
    assert BACKUP_TIMEOUT_SECONDS == 10800
    assert cmd[3] == "102"
    assert ["--dumpdir", str(dirs.local)] == cmd[4:6]
    assert "--mode" in cmd and cmd[cmd.index("--mode") + 1] == "snapshot"
    assert cmd[cmd.index("--compress") + 1] == "zstd"
    assert cmd[cmd.index("--mailto") + 1] == "ops@example.com"


def test_success_still_unlocks(make_config):
    shell = FakeShell()
    outcome = run_backup(shell, Pct(shell), make_config(), "102")
    assert outcome.ok
    names = [c[2] if c[0] == "timeout" else " ".join(c[:2]) for c in shell.executed]
    assert names == ["vzdump", "pct unlock"]


def test_timeout_is_reported_separately(make_config):
    shell = FakeShell().on("vzdump 103", CommandResult(124))
    outcome = run_backup(shell, Pct(shell), make_config(), "103")
    assert not outcome.ok
    assert outcome.kind == KIND_BACKUP_TIMEOUT
    assert "timed out" in outcome.reason
    assert shell.ran("pct unlock 103")


def test_non_zero_exit_is_a_failure(make_config):
    shell = FakeShell().on("vzdump 103", CommandResult(2))
    outcome = run_backup(shell, Pct(shell), make_config(), "103")
    assert outcome.kind == KIND_BACKUP_FAILED
    assert "code 2" in outcome.reason
    assert shell.ran("pct unlock 103")


def test_failed_unlock_is_not_fatal(make_config):
    shell = FakeShell().on("pct unlock", CommandResult(255, "", "no lock"))
    assert run_backup(shell, Pct(shell), make_config(), "102").ok


def test_unlock_runs_when_backup_raises(make_config):
    class BrokenShell(FakeShell):
        def _execute(self, cmd, *, input=None, stream=False):
            if "vzdump" in cmd:
                raise OSError("fork failed")
            return super()._execute(cmd, input=input, stream=stream)

    shell = BrokenShell()
    try:
        run_backup(shell, Pct(shell), make_config(), "102")
    except OSError:
        pass
    assert shell.ran("pct unlock 102")
