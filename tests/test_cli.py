import json
import os
import signal
import subprocess
import sys
import time

import pytest
from click.testing import CliRunner

from localq.cli import cli


@pytest.fixture()
def run(db_path):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(cli, ["--db", db_path, *args])

    return _run


def test_enqueue_and_list(run):
    result = run("enqueue", "--id", "okjob", "--cmd", "echo 42", "--max-retries", "2")
    assert result.exit_code == 0, result.output
    assert "Enqueued okjob" in result.output

    listing = run("list", "--state", "pending")
    assert "okjob" in listing.output
    assert "attempts=0/2" in listing.output
    assert run("list", "--state", "completed").output.strip() == "No jobs."


def test_enqueue_json(run):
    result = run("enqueue", "\ufeff" + '{"id": "j1", "command": "echo hi"}')
    assert result.exit_code == 0, result.output
    assert "j1" in run("list").output


@pytest.mark.parametrize("args", [
    ["enqueue"],
    ["enqueue", "not json"],
    ["enqueue", "[1, 2]"],
    ["enqueue", "--cmd", "echo", "--max-retries", "-1"],
])
def test_enqueue_rejects_bad_input(run, args):
    result = run(*args)
    assert result.exit_code == 1
    assert "Error" in result.output


def test_duplicate_enqueue_fails(run):
    run("enqueue", "--id", "a", "--cmd", "echo 1")
    result = run("enqueue", "--id", "a", "--cmd", "echo 2")
    assert result.exit_code == 1
    assert "already exists" in result.output


def test_status_is_json(run):
    run("enqueue", "--id", "a", "--cmd", "echo 1")
    result = run("status")
    assert result.exit_code == 0
    report = json.loads(result.output)
    assert report["jobs"]["pending"] == 1
    assert report["workers"] == []
    assert report["config"]["backoff_base"] == 2.0


def test_config_commands(run):
    assert run("config", "set", "max_retries", "5").exit_code == 0
    assert run("config", "get", "max_retries").output.strip() == "5"
    assert json.loads(run("config", "get").output)["max_retries"] == 5

    bad = run("config", "set", "job_timeout", "10")
    assert bad.exit_code == 1
    assert run("config", "set", "priority", "1").exit_code == 1


def test_dlq_commands(run):
    assert run("dlq", "list").output.strip() == "DLQ is empty."
    result = run("dlq", "retry", "ghost")
    assert result.exit_code == 1
    assert "not found" in result.output


def test_worker_stop_without_workers(run):
    result = run("worker", "stop")
    assert result.exit_code == 0
    assert "No running workers." in result.output


def test_worker_start_rejects_count(run):
    assert run("worker", "start", "--count", "0").exit_code == 1


@pytest.mark.skipif(os.name != "posix", reason="commands use a POSIX shell")
def test_worker_process_end_to_end(db_path, run):
    run("enqueue", "--id", "okjob", "--cmd", "echo 42")
    run("enqueue", "--id", "badjob", "--cmd", "exit 2", "--max-retries", "1")
    run("config", "set", "worker_poll_interval", "100")

    cmd = [sys.executable, "-m", "localq.cli", "--db", db_path]
    proc = subprocess.Popen(cmd + ["worker", "start", "--count", "2"])
    try:
        deadline = 15
        while deadline > 0:
            report = json.loads(run("status").output)
            if report["jobs"]["completed"] == 1 and report["jobs"]["dead"] == 1:
                break
            time.sleep(0.2)
            deadline -= 0.2
        assert report["jobs"]["completed"] == 1
        assert report["jobs"]["dead"] == 1
        assert len(report["workers"]) == 2

        stop = subprocess.run(cmd + ["worker", "stop"], capture_output=True, text=True)
        assert stop.returncode == 0
        assert "Asked 1 worker process(es) to stop." in stop.stdout
        assert proc.wait(timeout=15) == 0
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()

    assert json.loads(run("status").output)["workers"] == []
    assert "badjob" in run("dlq", "list").output
    assert run("dlq", "retry", "badjob").exit_code == 0
    assert "badjob" in run("list", "--state", "pending").output


@pytest.mark.skipif(os.name != "posix", reason="commands use a POSIX shell")
def test_worker_start_honours_grace_on_sigterm(db_path, run):
    run("enqueue", "--id", "long", "--cmd", "sleep 8")
    run("config", "set", "job_timeout", "20000")
    run("config", "set", "worker_poll_interval", "100")

    cmd = [sys.executable, "-m", "localq.cli", "--db", db_path]
    proc = subprocess.Popen(cmd + ["worker", "start", "--count", "1", "--grace", "1"])
    try:
        deadline = time.monotonic() + 15
        while time.monotonic() < deadline:
            if json.loads(run("status").output)["jobs"]["processing"] == 1:
                break
            time.sleep(0.1)
        time.sleep(0.2)
        proc.send_signal(signal.SIGTERM)
        started = time.monotonic()
        assert proc.wait(timeout=10) == 0
        assert time.monotonic() - started < 4
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
