"""Cleanup guard releasing build resources on process exit.

The guard is installed before the first loop device is attached. Whatever
path the process takes out (normal return, exception, SIGTERM, SIGHUP or
Ctrl-C) it detaches the loop device, unmounts the mount point and removes the
working directory, once.

A mount point that cannot be unmounted is the one failure that is escalated:
the working directory is then left alone, since removing it recursively could
reach into the still bind-mounted host package cache.
"""

from __future__ import annotations

import atexit
import shutil
import signal
import weakref

from arch_vm_builder.logging import LoggerFactory
from arch_vm_builder.storage.exceptions import UnmountFailedError
from arch_vm_builder.storage.session import BuildSession


log = LoggerFactory.for_cleanup()

HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class CleanupGuard:
    def __init__(self, session: BuildSession):
        self._session_ref = weakref.ref(session)
        self._installed = False
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def install(self) -> None:
        """Register with atexit and turn termination signals into SystemExit."""
        if self._installed:
            return
        atexit.register(self._release_at_exit)
        for signum in HANDLED_SIGNALS:
            signal.signal(signum, self._on_signal)
        self._installed = True

    def _on_signal(self, signum, frame) -> None:
        log.warning(f"Received {signal.Signals(signum).name}, cleaning up")
        raise SystemExit(128 + signum)

    def release(self) -> None:
        """Release everything the session still holds. Runs at most once.

        Raises:
            UnmountFailedError: If the mount point stays mounted
        """
        if self._released:
            return
        self._released = True

        session = self._session_ref()
        if session is None:
            return
        handle = session.handle
        runner = session.runner

        if handle.loop_device is not None:
            result = runner.run(["losetup", "--detach", handle.loop_device])
            if result.ok:
                log.info(f"Detached {handle.loop_device}")
            else:
                log.warning(f"Could not detach {handle.loop_device}: {result.describe()}")

        if handle.is_mounted():
            result = runner.run(["umount", "--recursive", session.mount_point])
            if not result.ok:
                log.critical(
                    f"{session.mount_point} is still mounted, "
                    f"leaving {session.workdir} in place: {result.describe()}"
                )
                raise UnmountFailedError([str(session.mount_point)], result.describe())
            log.info(f"Unmounted {session.mount_point}")

        handle.forget()

        if session.retain_workdir:
            retained = ", ".join(str(p) for p in session.retained)
            log.warning(f"Keeping {session.workdir} for inspection: {retained}")
            return
        shutil.rmtree(session.workdir, ignore_errors=True)
        log.debug(f"Removed {session.workdir}")

    def _release_at_exit(self) -> None:
        try:
            self.release()
        except UnmountFailedError as error:
            log.critical(f"Cleanup failed at exit: {error}")
