import datetime as dt
import os
from types import SimpleNamespace

import pytest

from pve_ct_backup import CommandResult, Config, Shell

# 2026-10-18 02:30 local time, a typical nightly run
NOW = dt.datetime(2026, 10, 18, 2, 30).timestamp()

DF_HEADER = "Filesystem     1024-blocks    Used Available Capacity Mounted on\n"


def _contains(cmd, tokens):
    n = len(tokens)
    return any(cmd[i:i + n] == tokens for i in range(len(cmd) - n + 1))


class FakeShell(Shell):
    """Answers commands from canned results and records everything that reached the OS."""

    def __init__(self, dry_run=False):
        super().__init__(dry_run=dry_run)
        self.rules = []
        self.executed = []
        self.inputs = []
        self.moves = []
        self.removals = []
        self.drop_moves = False

    def on(self, fragment, *results):
        # newest rule wins; a sequence of results is consumed, the last one sticks
        self.rules.insert(0, (fragment.split(), list(results)))
        return self

    def add_container(self, ctid, state="running", reachable=True, processes=12, disk_pct=40):
        self.on(f"pct config {ctid}", CommandResult(0, "arch: amd64\nhostname: ct{}\n".format(ctid)))
        self.on(f"pct status {ctid}", CommandResult(0, f"status: {state}\n"))
        self.on(f"pct exec {ctid} -- echo test",
                CommandResult(0, "test\n") if reachable else CommandResult(124))
        self.on(f"pct exec {ctid} -- ps", CommandResult(0, "".join(f"{i}\n" for i in range(1, processes + 1))))
        self.on(f"pct exec {ctid} -- cat /proc/loadavg", CommandResult(0, "0.15 0.10 0.05 1/123 4567\n"))
        self.on(f"pct exec {ctid} -- df -P /",
                CommandResult(0, DF_HEADER + f"/dev/loop0 8125880 3066328 4623740 {disk_pct}% /\n"))
        # no leftover ZFS datasets unless a test says otherwise
        self.on("zfs list", CommandResult(1, "", "dataset does not exist"))
        return self

    def ran(self, fragment):
        tokens = fragment.split()
        return [c for c in self.executed if _contains(c, tokens)]

    def _execute(self, cmd, *, input=None, stream=False):
        self.executed.append(list(cmd))
        if input is not None:
            self.inputs.append(input)
        for tokens, results in self.rules:
            if _contains(list(cmd), tokens):
                return results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(0)

    def _move(self, src, dst_dir):
        self.moves.append((src, dst_dir))
        if not self.drop_moves:
            super()._move(src, dst_dir)

    def _remove(self, path):
        self.removals.append(path)
        super()._remove(path)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dirs(tmp_path):
    d = SimpleNamespace(local=tmp_path / "dump", target=tmp_path / "s3" / "dump", locks=tmp_path / "locks")
    for p in (d.local, d.target, d.locks):
        p.mkdir(parents=True)
    return d


@pytest.fixture
def make_config(dirs):
    def factory(**overrides):
        values = dict(
            containers=("102",),
            local_backup_dir=dirs.local,
            target_backup_dir=dirs.target,
            lock_dir=dirs.locks,
            node_name="pve1",
            email_recipient="ops@example.com",
        )
        values.update(overrides)
        return Config(**values)
    return factory


@pytest.fixture
def make_artifacts():
    def factory(directory, ctid, when=NOW, exts=(".tar.zst", ".log")):
        stamp = dt.datetime.fromtimestamp(when).strftime("%Y_%m_%d-%H_%M_%S")
        paths = []
        for ext in exts:
            p = directory / f"vzdump-lxc-{ctid}-{stamp}{ext}"
            p.write_text("data")
            os.utime(p, (when, when))
            paths.append(p)
        return paths
    return factory
