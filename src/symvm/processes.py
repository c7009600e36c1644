# SPDX-License-Identifier: AGPL-3.0

import contextlib
import subprocess

import psutil


def kill_process_tree(process: subprocess.Popen) -> None:
    """Attempts to terminate and then kill the process and its children."""

    if process.poll() is not None:
        return

    # use psutil to kill the entire process tree (including children)
    try:
        parent_process = psutil.Process(process.pid)
        processes = parent_process.children(recursive=True)
        processes.append(parent_process)

        # ask politely to terminate first
        for p in processes:
            p.terminate()

        # termination grace period
        with contextlib.suppress(psutil.TimeoutExpired, subprocess.TimeoutExpired):
            parent_process.wait(timeout=0.5)

        # after grace period, force kill
        for p in processes:
            if p.is_running():
                p.kill()

    except psutil.NoSuchProcess:
        # process already terminated, nothing to do
        pass
