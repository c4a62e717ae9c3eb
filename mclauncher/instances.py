"""
Persisted instance records and the install state machine.

An instance is a named game directory bound to one version (optionally
with a loader). Its record lives in ``instances/<id>/instance.json``; the
supervisor's poll thread writes it too, so every read-modify-write goes
through :meth:`InstanceStore.update` under one lock.
"""
import asyncio
import json
import logging
import os
import shutil
import threading
import time
import uuid
from typing import Any, List, Optional

from pydantic import ValidationError

from . import events
from .config import Paths
from .errors import LauncherError, SchemaError
from .events import EventSink, NullSink
from .loader import LoaderResolver
from .models import InstanceRecord, InstanceState
from .runtime import RuntimeResolver, required_java_version
from .versions import VersionResolver

log = logging.getLogger(__name__)


class InstanceNotFoundError(LauncherError):
    """No record exists for the requested instance id."""


class InstanceStore:
    def __init__(self, paths: Paths):
        self.paths = paths
        self._lock = threading.RLock()

    def exists(self, instance_id: str) -> bool:
        return self.paths.instance_json(instance_id).exists()

    def load(self, instance_id: str) -> InstanceRecord:
        path = self.paths.instance_json(instance_id)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise InstanceNotFoundError(f"Instance {instance_id} not found") from None
        except json.JSONDecodeError as e:
            raise SchemaError(f"Error parsing {path}: {e}") from e
        try:
            return InstanceRecord.model_validate(data)
        except ValidationError as e:
            raise SchemaError(f"Invalid instance record {path}: {e}") from e

    def save(self, record: InstanceRecord) -> None:
        path = self.paths.instance_json(record.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix('.json.tmp')
        with self._lock:
            with open(tmp_path, 'w', encoding='utf-8') as f:
                f.write(record.model_dump_json(indent=2))
            os.replace(tmp_path, path)

    def update(self, instance_id: str, **changes: Any) -> InstanceRecord:
        """Re-reads the record, applies ``changes`` and saves it."""
        with self._lock:
            record = self.load(instance_id)
            for key, value in changes.items():
                setattr(record, key, value)
            self.save(record)
            return record

    def list_instances(self) -> List[InstanceRecord]:
        if not self.paths.instances.is_dir():
            return []
        records = []
        for entry in sorted(self.paths.instances.iterdir()):
            if not (entry / 'instance.json').is_file():
                continue
            try:
                records.append(self.load(entry.name))
            except SchemaError as e:
                log.warning(f"Skipping instance {entry.name}: {e}")
        return records

    def create(self, name: str, version: str, loader: Optional[str] = None,
               loader_version: Optional[str] = None) -> InstanceRecord:
        record = InstanceRecord(
            id=str(uuid.uuid4()),
            name=name,
            version=version,
            mc_version=version,
            state=InstanceState.NOT_INSTALLED,
            created_at=int(time.time()),
            loader=loader,
            loader_version=loader_version,
        )
        self.paths.game_dir(record.id).mkdir(parents=True, exist_ok=True)
        self.save(record)
        log.info(f"Created instance {record.id} ({name}, {version})")
        return record

    def version_in_use(self, version_id: str, excluding: Optional[str] = None) -> bool:
        """True when an instance other than ``excluding`` launches ``version_id`` or builds on it."""
        return any(record.id != excluding and version_id in (record.version_id(), record.base_version)
                   for record in self.list_instances())

    def delete(self, instance_id: str, delete_version: bool = False) -> None:
        """
        Removes an instance and its game directory.

        With ``delete_version`` the version the instance launches (the
        derived loader version for loader instances) is removed as well,
        unless another instance still uses it.
        """
        if not self.exists(instance_id):
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        if delete_version:
            version_id = self.load(instance_id).version_id()
            if self.version_in_use(version_id, excluding=instance_id):
                log.info(f"Keeping version {version_id}, other instances still use it.")
            else:
                version_dir = self.paths.version_dir(version_id)
                if version_dir.is_dir():
                    log.info(f"Deleting version {version_id}")
                    shutil.rmtree(version_dir)
        shutil.rmtree(self.paths.instance_dir(instance_id))
        log.info(f"Deleted instance {instance_id}")


def emit_state(sink: EventSink, record: InstanceRecord) -> None:
    events.emit(sink, events.INSTANCE_STATE_CHANGED, {"id": record.id, "state": record.state.value})


async def install_instance(instance_id: str, store: InstanceStore, versions: VersionResolver,
                           loaders: LoaderResolver, runtimes: Optional[RuntimeResolver] = None,
                           sink: Optional[EventSink] = None) -> InstanceRecord:
    """
    Installs everything an instance needs and moves it to ``ready``.

    On failure, cancellation included, the instance is moved to ``error``
    with the message kept in ``last_error`` and the exception is re-raised;
    nothing is retried.
    """
    sink = sink or NullSink()
    record = store.update(instance_id, state=InstanceState.INSTALLING, last_error=None)
    emit_state(sink, record)
    try:
        if record.loader and record.loader_version:
            derived_id, effective = await loaders.install_loader(record.loader, record.base_version, record.loader_version)
            if effective != record.loader_version:
                log.info(f"Instance {instance_id}: loader version {record.loader_version} resolved to {effective}")
                store.update(instance_id, loader_version=effective)
            descriptor = await versions.resolve(derived_id)
        else:
            descriptor = await versions.ensure_installed(record.version)

        if runtimes is not None:
            java_path = await runtimes.resolve_runtime(required_java_version(descriptor),
                                                       override=record.java_path_override)
            store.update(instance_id, java_path=java_path)
    except (Exception, asyncio.CancelledError) as e:
        record = store.update(instance_id, state=InstanceState.ERROR, last_error=str(e) or type(e).__name__)
        log.error(f"Installing instance {instance_id} failed: {e}")
        emit_state(sink, record)
        raise

    record = store.update(instance_id, state=InstanceState.READY)
    emit_state(sink, record)
    log.info(f"Instance {instance_id} is ready")
    return record
