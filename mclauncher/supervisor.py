"""
Launching game processes and following them until they exit.

Each running instance gets three daemon threads: one pump per output
stream turning lines into ``instance-log`` events, and a poll loop that
notices the exit (or a kill that took the process out of the registry)
and flips the instance back to ``ready``. The poll loop is the only
writer of that transition.
"""
import asyncio
import logging
import subprocess
import threading
import time
from typing import IO, Dict, List, Optional, Tuple

from . import events
from .config import Paths, Settings, load_settings
from .errors import LauncherError, ProcessError
from .events import EventSink, NullSink
from .instances import InstanceStore, emit_state
from .launch import RuntimeConfig, build_classpath, build_launch_args
from .loader import LoaderResolver
from .models import InstanceRecord, InstanceState
from .runtime import JavaCompatibility, check_compatibility, required_java_version
from .versions import VersionResolver

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.5
REAP_TIMEOUT = 5
# Reaping plus draining both output pumps.
SHUTDOWN_TIMEOUT = 3 * REAP_TIMEOUT + 1


class ProcessRegistry:
    """Running processes by instance id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._processes: Dict[str, subprocess.Popen] = {}

    def register(self, instance_id: str, process: subprocess.Popen) -> None:
        with self._lock:
            self._processes[instance_id] = process

    def get(self, instance_id: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._processes.get(instance_id)

    def remove(self, instance_id: str, process: Optional[subprocess.Popen] = None) -> Optional[subprocess.Popen]:
        """Removes the entry, only if it still is ``process`` when one is given."""
        with self._lock:
            current = self._processes.get(instance_id)
            if current is None or (process is not None and current is not process):
                return None
            return self._processes.pop(instance_id)

    def running_ids(self) -> List[str]:
        with self._lock:
            return list(self._processes)

    def __contains__(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._processes


def choose_java(record: InstanceRecord, settings: Settings) -> str:
    return record.java_path_override or settings.global_java_path or record.java_path or 'java'


class ProcessSupervisor:
    def __init__(self, paths: Paths, store: InstanceStore, versions: VersionResolver, loaders: LoaderResolver,
                 registry: Optional[ProcessRegistry] = None, sink: Optional[EventSink] = None,
                 poll_interval: float = POLL_INTERVAL):
        self.paths = paths
        self.store = store
        self.versions = versions
        self.loaders = loaders
        self.registry = registry if registry is not None else ProcessRegistry()
        self.sink = sink or NullSink()
        self.poll_interval = poll_interval
        self._pollers: Dict[str, threading.Thread] = {}

    # --- Launch ---

    async def prepare(self, instance_id: str) -> Tuple[InstanceRecord, List[str]]:
        """
        Makes sure the instance's version is installed and builds its argv.

        A missing descriptor is installed on the spot (through the loader
        resolver for loader instances), a missing client jar re-fetched.
        """
        record = self.store.load(instance_id)
        version_id = record.version_id()

        if not self.versions.is_installed(version_id):
            log.info(f"Version {version_id} of instance {instance_id} is missing, installing it.")
            if record.loader and record.loader_version:
                version_id, effective = await self.loaders.install_loader(
                    record.loader, record.base_version, record.loader_version)
                if effective != record.loader_version:
                    record = self.store.update(instance_id, loader_version=effective)
            else:
                await self.versions.ensure_installed(version_id)

        descriptor = await self.versions.resolve(version_id)
        await self.versions.install_client_jar(version_id, descriptor)

        settings = load_settings(self.paths)
        config = RuntimeConfig(
            java_path=choose_java(record, settings),
            version_id=version_id,
            classpath=build_classpath(descriptor, self.paths, version_id),
            game_dir=self.paths.game_dir(instance_id),
            assets_dir=self.paths.assets,
            min_memory=record.min_memory or settings.min_memory,
            max_memory=record.max_memory or settings.max_memory,
            global_args=settings.global_java_args,
            instance_args=record.java_args or '',
        )
        return record, build_launch_args(descriptor, config)

    def check_java_compatibility(self, instance_id: str) -> JavaCompatibility:
        """
        Checks the Java an instance would be launched with against what its
        game version needs. The global ``skip_java_check`` setting and the
        instance's ``java_warning_ignored`` flag both make the check pass.
        """
        record = self.store.load(instance_id)
        settings = load_settings(self.paths)
        required = required_java_version(record.base_version)
        return check_compatibility(required, choose_java(record, settings),
                                   skip=settings.skip_java_check or record.java_warning_ignored)

    async def launch(self, instance_id: str) -> subprocess.Popen:
        if instance_id in self.registry:
            raise ProcessError(f"Instance {instance_id} is already running")
        _, argv = await self.prepare(instance_id)

        loop = asyncio.get_running_loop()
        java = await loop.run_in_executor(None, self.check_java_compatibility, instance_id)
        if not java.compatible:
            log.warning(f"Instance {instance_id} needs Java {java.required_version}, but {java.path} is "
                        f"version {java.actual_version}. Launching anyway.")
        # start() may block while a previous process of the instance is reaped.
        return await loop.run_in_executor(None, self.start, instance_id, argv)

    def start(self, instance_id: str, argv: List[str]) -> subprocess.Popen:
        """Spawns ``argv`` for an instance and starts following it."""
        previous = self._pollers.get(instance_id)
        if previous is not None and previous.is_alive():
            # Its poll loop still has to write "ready" for the old process.
            log.info(f"Waiting for the previous process of instance {instance_id} to be reaped.")
            previous.join(timeout=SHUTDOWN_TIMEOUT)
            if previous.is_alive():
                raise ProcessError(f"Instance {instance_id} is still shutting down")

        game_dir = self.paths.game_dir(instance_id)
        game_dir.mkdir(parents=True, exist_ok=True)
        log.info(f"Starting instance {instance_id}: {argv[0]}")
        try:
            process = subprocess.Popen(argv, cwd=game_dir, stdin=subprocess.DEVNULL,
                                       stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            message = f"Failed to start {argv[0]}: {e}"
            record = self.store.update(instance_id, state=InstanceState.ERROR, last_error=message)
            emit_state(self.sink, record)
            raise ProcessError(message) from e

        # Observers see "running" before the first log line.
        record = self.store.update(instance_id, state=InstanceState.RUNNING,
                                   last_played=int(time.time()), last_error=None)
        emit_state(self.sink, record)
        self.registry.register(instance_id, process)

        pumps = []
        for stream, name in ((process.stdout, 'stdout'), (process.stderr, 'stderr')):
            pump = threading.Thread(target=self._pump, args=(instance_id, stream, name),
                                    name=f"{instance_id}-{name}", daemon=True)
            pump.start()
            pumps.append(pump)
        poller = threading.Thread(target=self._poll, args=(instance_id, process, pumps),
                                  name=f"{instance_id}-poll", daemon=True)
        self._pollers[instance_id] = poller
        poller.start()
        return process

    # --- Background threads ---

    def _pump(self, instance_id: str, stream: IO[bytes], name: str) -> None:
        with stream:
            for raw in iter(stream.readline, b''):
                line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
                events.emit(self.sink, events.INSTANCE_LOG, {"id": instance_id, "stream": name, "line": line})

    def _poll(self, instance_id: str, process: subprocess.Popen, pumps: List[threading.Thread]) -> None:
        try:
            self._follow(instance_id, process, pumps)
        finally:
            if self._pollers.get(instance_id) is threading.current_thread():
                self._pollers.pop(instance_id, None)

    def _follow(self, instance_id: str, process: subprocess.Popen, pumps: List[threading.Thread]) -> None:
        while True:
            time.sleep(self.poll_interval)
            if self.registry.get(instance_id) is not process:
                log.info(f"Instance {instance_id} was stopped.")
                try:
                    process.wait(timeout=REAP_TIMEOUT)
                except subprocess.TimeoutExpired:
                    log.warning(f"Process {process.pid} of instance {instance_id} did not exit after kill.")
                break
            if process.poll() is not None:
                self.registry.remove(instance_id, process)
                log.info(f"Instance {instance_id} exited with code {process.returncode}.")
                break

        # Last lines reach the sink before "ready" does.
        for pump in pumps:
            pump.join(timeout=REAP_TIMEOUT)

        current = self.registry.get(instance_id)
        if current is not None and current is not process:
            log.debug(f"Instance {instance_id} was relaunched, leaving its state alone.")
            return
        try:
            record = self.store.update(instance_id, state=InstanceState.READY)
        except LauncherError as e:
            log.warning(f"Could not reset state of instance {instance_id}: {e}")
            return
        emit_state(self.sink, record)

    # --- Control ---

    def is_running(self, instance_id: str) -> bool:
        return instance_id in self.registry

    def kill(self, instance_id: str) -> bool:
        """Stops a running instance, False when it wasn't running."""
        process = self.registry.remove(instance_id)
        if process is None:
            return False
        log.info(f"Killing instance {instance_id} (pid {process.pid})")
        process.kill()
        return True

    def wait(self, instance_id: str, timeout: Optional[float] = None) -> Optional[int]:
        """
        Blocks until the instance's process is gone and its state was reset.

        Returns the exit code, or None when the instance isn't running.
        """
        process = self.registry.get(instance_id)
        poller = self._pollers.get(instance_id)
        if process is None and poller is None:
            return None
        if process is not None:
            process.wait(timeout=timeout)
        if poller is not None:
            poller.join(timeout=timeout)
        return process.returncode if process is not None else None
