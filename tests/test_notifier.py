from conftest import FakeShell

from pve_ct_backup import CommandResult, Event, Notifier


def test_failure_mail_is_sent_with_subject_and_body():
    shell = FakeShell()
    result = Notifier(shell, "ops@example.com", "pve1").notify(
        Event.CONTAINER_FAILED,
        {"ctid": "103", "kind": "backup-timeout", "message": "Backup timed out after 3 hours for container 103"})

    assert result is None
    assert shell.executed == [["mail", "-s", "Proxmox Backup FAILED - CT 103 (backup-timeout) - Node pve1",
                               "ops@example.com"]]
    assert "timed out" in shell.inputs[0]


def test_run_completion_subjects():
    shell = FakeShell()
    notifier = Notifier(shell, "root", "pve2")
    notifier.notify(Event.RUN_STARTED, {"time": "2026-10-18 02:30:00"})
    notifier.notify(Event.RUN_COMPLETED, {"success": True})
    notifier.notify(Event.RUN_COMPLETED, {"success": False, "summary": "CT 104: partial"})

    subjects = [c[2] for c in shell.executed]
    assert subjects == [
        "Proxmox Backup Started - Node pve2",
        "Proxmox Backup SUCCESS - Node pve2",
        "Proxmox Backup FAILED - Node pve2",
    ]
    assert "2026-10-18 02:30:00" in shell.inputs[0]
    assert "CT 104: partial" in shell.inputs[2]


def test_transport_errors_are_swallowed(caplog):
    class DeadShell(FakeShell):
        def _execute(self, cmd, *, input=None, stream=False):
            raise OSError("sendmail: connection refused")

    Notifier(DeadShell(), "root", "pve1").notify(Event.RUN_STARTED)
    assert "could not be sent" in caplog.text


def test_non_zero_mail_exit_is_only_logged(caplog):
    shell = FakeShell().on("mail", CommandResult(1, "", "no MTA"))
    Notifier(shell, "root", "pve1").notify(Event.RUN_COMPLETED, {"success": True})
    assert "no MTA" in caplog.text


def test_dry_run_sends_nothing():
    shell = FakeShell(dry_run=True)
    Notifier(shell, "root", "pve1").notify(Event.RUN_STARTED)
    assert shell.executed == []
