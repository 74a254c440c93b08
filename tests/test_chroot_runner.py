from __future__ import annotations

from pathlib import Path

import pytest

from livecd_customizer.chroot_runner import ChrootStageRunner
from livecd_customizer.lib.status import read_status

MANIFEST = """\
# app1 packages

curl
echo "postfix postfix/main_mailer_type select No configuration" | debconf-set-selections

# editors
vim
git
"""


@pytest.fixture
def root(tmp_path) -> Path:
    r = tmp_path / "root"
    for d in ("etc", "tmp", "var/lib/dbus", "root"):
        (r / d).mkdir(parents=True)
    (r / "etc/hosts").write_text("127.0.0.1 buildhost\n")
    (r / "etc/resolv.conf").write_text("nameserver 10.0.0.1\n")
    (r / "tmp/leftover").write_text("x")
    (r / "newPackages").write_text(MANIFEST)
    return r


@pytest.fixture
def inner(fake_runner, stage_log, root):
    fake_runner.on("dbus-uuidgen", lambda _a, _c: (0, "0123456789abcdef\n", ""))
    fake_runner.on("dpkg-query", lambda _a, _c: (0, "10\tzlib\n900\tvim\n350\tcurl\n", ""))
    return ChrootStageRunner(fake_runner, stage_log, root=root)


def test_success_installs_in_file_order_and_reports_status(inner, fake_runner, root):
    assert inner.run() == 0

    installs = [c for c in fake_runner.commands("apt-get") if c[1:3] == ["-y", "install"]]
    assert installs == [
        ["apt-get", "-y", "install", "curl"],
        ["apt-get", "-y", "install", "vim"],
        ["apt-get", "-y", "install", "git"],
    ]
    directives = fake_runner.commands("sh")
    assert len(directives) == 1
    assert "debconf-set-selections" in directives[0][2]

    # Directive evaluated between curl and vim, as in the file.
    flat = [c for c in fake_runner.commands() if c[0] == "sh" or c[:3] == ["apt-get", "-y", "install"]]
    assert [c[-1] if c[0] == "apt-get" else "directive" for c in flat] == ["curl", "directive", "vim", "git"]

    status = read_status(root / "customize-status.json")
    assert status is not None and status.ok


def test_mounts_first_and_unmounts_in_reverse(inner, fake_runner):
    inner.run()
    cmds = fake_runner.commands()
    assert cmds[:3] == [
        ["mount", "-t", "proc", "none", "/proc"],
        ["mount", "-t", "sysfs", "none", "/sys"],
        ["mount", "-t", "devpts", "none", "/dev/pts"],
    ]
    assert fake_runner.commands("umount") == [["umount", "/dev/pts"], ["umount", "/sys"], ["umount", "/proc"]]
    # Nothing inside the root escalates privilege.
    assert all(c[0] != "sudo" for c in fake_runner.calls)


def test_cleanup_order_and_effects(inner, fake_runner, root):
    inner.run()
    cmds = fake_runner.commands()
    names = [" ".join(c[:2]) for c in cmds]

    clean = names.index("apt-get clean")
    rm_tmp = next(i for i, c in enumerate(cmds) if c[:2] == ["rm", "-rf"])
    stub_rm = cmds.index(["rm", "-f", "/sbin/initctl"])
    undivert = cmds.index(["dpkg-divert", "--rename", "--remove", "/sbin/initctl"])
    machine_id_rm = cmds.index(["rm", "-rf", "/var/lib/dbus/machine-id"])
    first_umount = cmds.index(["umount", "/dev/pts"])

    assert clean < rm_tmp < stub_rm < undivert < machine_id_rm < first_umount
    assert "/tmp/leftover" in cmds[rm_tmp]
    assert "/root/.bash_history" in cmds[rm_tmp]
    assert (root / "etc/hosts").read_text() == ""
    assert (root / "etc/resolv.conf").read_text() == ""


def test_snapshots_are_size_descending(inner, root):
    inner.run()
    expected = "900\tvim\n350\tcurl\n10\tzlib\n"
    assert (root / "install-pkgs.before").read_text() == expected
    assert (root / "install-pkgs.after").read_text() == expected


def test_failed_package_stops_and_still_cleans_up(inner, fake_runner, root):
    fake_runner.on("apt-get", lambda argv, _c: 100 if argv[-1] == "vim" else 0)

    assert inner.run() == 1

    installed = [c[-1] for c in fake_runner.commands("apt-get") if c[1:3] == ["-y", "install"]]
    assert installed == ["curl", "vim"]
    assert fake_runner.commands("umount")
    assert not (root / "install-pkgs.after").exists()
    status = read_status(root / "customize-status.json")
    assert status is not None and status.status == 1
    assert "vim" in status.message
    assert inner.stage_log.path.read_text().rstrip().endswith("EXIT_VALUE=1")


def test_missing_machine_id_fails_before_installing(inner, fake_runner, root):
    fake_runner.fail("dbus-uuidgen")

    assert inner.run() == 1
    assert not [c for c in fake_runner.commands("apt-get") if c[1:2] == ["-y"]]
    status = read_status(root / "customize-status.json")
    assert "1 errors" in status.message


def test_preflight_errors_are_aggregated(inner, fake_runner, root):
    fake_runner.fail("dbus-uuidgen")
    fake_runner.fail("ping")
    (root / "newPackages").unlink()

    assert inner.run() == 1
    status = read_status(root / "customize-status.json")
    assert status.message.startswith("Found 3 errors")


def test_environment_is_pinned(inner, fake_runner, monkeypatch):
    seen = []
    fake_runner.on("apt-get", lambda argv, _c: None)
    original = fake_runner._execute

    def spy(argv, *, cwd, env, input_text):
        seen.append(dict(env or {}))
        return original(argv, cwd=cwd, env=env, input_text=input_text)

    monkeypatch.setattr(fake_runner, "_execute", spy)
    inner.run()
    assert {"HOME": "/root", "LC_ALL": "C"} in seen


def test_drop_directory_is_created_after_the_manifest(inner, fake_runner):
    assert inner.run() == 0

    cmds = fake_runner.commands()
    last_install = max(i for i, c in enumerate(cmds) if c[:3] == ["apt-get", "-y", "install"])
    mkdir = cmds.index(["mkdir", "-p", "/home/install"])
    chmod = cmds.index(["chmod", "777", "/home/install"])
    assert last_install < mkdir < chmod


def test_drop_directory_can_be_disabled(fake_runner, stage_log, root):
    fake_runner.on("dbus-uuidgen", lambda _a, _c: (0, "0123456789abcdef\n", ""))
    runner = ChrootStageRunner(fake_runner, stage_log, root=root, drop_dir="")

    assert runner.run() == 0
    assert fake_runner.commands("mkdir") == []
    assert fake_runner.commands("chmod") == []


def test_drop_directory_failure_fails_the_run(inner, fake_runner, root):
    fake_runner.fail("chmod")

    assert inner.run() == 1
    status = read_status(root / "customize-status.json")
    assert status is not None and not status.ok


def test_stray_quote_in_manifest_is_installed_verbatim(inner, fake_runner, root):
    (root / "newPackages").write_text("curl\nfoo'bar\n")

    assert inner.run() == 0
    installs = [c for c in fake_runner.commands("apt-get") if c[1:3] == ["-y", "install"]]
    assert installs[-1] == ["apt-get", "-y", "install", "foo'bar"]
