import threading
import time

import pytest

from shipyard.errors import ProjectBusy
from shipyard.locks import ProjectLocks


def test_busy_project_is_rejected_immediately(tmp_path):
    locks = ProjectLocks(tmp_path)
    with locks.hold("api"):
        assert locks.is_locked("api")
        with pytest.raises(ProjectBusy):
            with locks.hold("api"):
                pass
    assert not locks.is_locked("api")


def test_lock_can_be_taken_again_after_release(tmp_path):
    locks = ProjectLocks(tmp_path)
    with locks.hold("api"):
        pass
    with locks.hold("api"):
        assert locks.lock_file("api").exists()


def test_projects_do_not_block_each_other(tmp_path):
    locks = ProjectLocks(tmp_path)
    with locks.hold("api"):
        with locks.hold("web"):
            assert locks.is_locked("web")


def test_waiting_caller_gets_lock_when_released(tmp_path):
    locks = ProjectLocks(tmp_path, poll_interval=0.01)
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("api"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    held.wait(5)

    threading.Timer(0.1, release.set).start()
    started = time.monotonic()
    with locks.hold("api", timeout=5):
        waited = time.monotonic() - started
    thread.join(5)
    assert waited >= 0.05


def test_timeout_expires_while_busy(tmp_path):
    locks = ProjectLocks(tmp_path)
    with locks.hold("api"):
        result = {}

        def contender():
            try:
                with locks.hold("api", timeout=0.1):
                    result["got"] = True
            except ProjectBusy as e:
                result["error"] = e

        thread = threading.Thread(target=contender)
        thread.start()
        thread.join(5)

    assert "got" not in result
    assert isinstance(result["error"], ProjectBusy)
