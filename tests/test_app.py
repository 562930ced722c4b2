import subprocess
import sys


def _help(*args):
    proc = subprocess.run(
        [sys.executable, "-m", "hospital_queue.app", *args, "-h"],
        capture_output=True,
        text=True,
        check=False,
    )
    assert proc.returncode == 0, proc.stderr
    return proc.stdout + proc.stderr


def test_app_help_runs():
    out = _help()
    assert "main entrypoint" in out
    for cmd in ("serve", "register", "advance", "queue", "watch", "stats"):
        assert cmd in out


def test_serve_help_lists_settings():
    out = _help("serve")
    assert "--database-url" in out
    assert "--observer-idle-seconds" in out
    assert "--mqtt-host" in out


def test_register_help_lists_patient_fields():
    out = _help("register")
    for flag in ("--name", "--age", "--gender", "--contact", "--department", "--symptoms"):
        assert flag in out
