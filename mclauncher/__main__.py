"""Command line front end: ``python -m mclauncher <command> ...``."""
import argparse
import asyncio
import logging
import pathlib
import sys
import threading
from typing import Any, List, Optional

from tqdm.asyncio import tqdm

from . import events
from .config import CONFIG_FILENAME, LauncherConfig, Paths, load_launcher_config
from .download import ContentFetcher
from .errors import LauncherError
from .events import LoggingSink
from .instances import InstanceStore, install_instance
from .loader import LoaderResolver
from .runtime import RuntimeResolver
from .supervisor import ProcessSupervisor
from .versions import VersionResolver

# --- Logging Setup ---
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)


class TqdmSink(LoggingSink):
    """Renders asset progress as a byte progress bar and game output as plain lines."""

    def __init__(self):
        self._bar: Optional[tqdm] = None
        self._lock = threading.Lock()

    def emit(self, event: str, payload: Any) -> None:
        if event == events.ASSET_PROGRESS:
            with self._lock:
                if self._bar is None:
                    self._bar = tqdm(total=payload["totalBytes"], desc="Assets", unit="B",
                                     unit_scale=True, leave=False)
                self._bar.total = payload["totalBytes"]
                self._bar.n = payload["downloadedBytes"]
                self._bar.refresh()
        elif event == events.ASSET_DONE:
            with self._lock:
                if self._bar is not None:
                    self._bar.close()
                    self._bar = None
            super().emit(event, payload)
        elif event == events.INSTANCE_LOG:
            tqdm.write(payload["line"], file=sys.stderr if payload["stream"] == 'stderr' else sys.stdout)
        else:
            super().emit(event, payload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mclauncher", description="Install and launch game versions.")
    parser.add_argument("--config", dest="config", type=pathlib.Path,
                        help=f"Path to the launcher config (default: ./{CONFIG_FILENAME})")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at debug level.")
    commands = parser.add_subparsers(dest="command", required=True)

    install = commands.add_parser("install", help="Install a game version.")
    install.add_argument("version")

    loader = commands.add_parser("loader", help="Install a loader on top of a game version.")
    loader.add_argument("loader_type", choices=["fabric", "quilt"])
    loader.add_argument("base_version")
    loader.add_argument("loader_version")

    loader_versions = commands.add_parser("loader-versions", help="List loader versions for a game version.")
    loader_versions.add_argument("loader_type", choices=["fabric", "quilt"])
    loader_versions.add_argument("base_version")
    loader_versions.add_argument("--beta", action="store_true", help="Include pre-releases.")

    create = commands.add_parser("create", help="Create an instance.")
    create.add_argument("name")
    create.add_argument("version")
    create.add_argument("--loader", choices=["fabric", "quilt"])
    create.add_argument("--loader-version", dest="loader_version")

    commands.add_parser("list", help="List instances.")

    delete = commands.add_parser("delete", help="Delete an instance.")
    delete.add_argument("instance")
    delete.add_argument("--delete-version", dest="delete_version", action="store_true",
                        help="Also delete its version when no other instance uses it.")

    check_java = commands.add_parser("check-java", help="Check the Java an instance would launch with.")
    check_java.add_argument("instance")

    setup = commands.add_parser("setup", help="Install everything an instance needs.")
    setup.add_argument("instance")

    launch = commands.add_parser("launch", help="Launch an instance and wait for it to exit.")
    launch.add_argument("instance")
    return parser


async def _launch_and_wait(supervisor: ProcessSupervisor, instance_id: str) -> int:
    process = await supervisor.launch(instance_id)
    log.info(f"Game process started (PID: {process.pid}). Waiting for exit...")
    loop = asyncio.get_running_loop()
    try:
        return_code = await loop.run_in_executor(None, supervisor.wait, instance_id)
    except asyncio.CancelledError:
        log.info("Launch cancelled by user, stopping the game.")
        supervisor.kill(instance_id)
        raise
    log.info(f"Game process exited with code {return_code}.")
    return return_code or 0


async def run(args: argparse.Namespace, config: LauncherConfig) -> int:
    paths = Paths(config.game_root(pathlib.Path.cwd()))
    sink = TqdmSink()
    async with ContentFetcher(concurrency=config.asset_concurrency, retries=config.asset_retries,
                              sink=sink) as fetcher:
        versions = VersionResolver(paths, fetcher, sink)
        loaders = LoaderResolver(versions)
        store = InstanceStore(paths)

        if args.command == "install":
            await versions.ensure_installed(args.version)
        elif args.command == "loader":
            derived_id, effective = await loaders.install_loader(args.loader_type, args.base_version,
                                                                 args.loader_version)
            print(f"{derived_id} (loader {effective})")
        elif args.command == "loader-versions":
            for version in await loaders.list_loader_versions(args.loader_type, args.base_version, args.beta):
                print(version)
        elif args.command == "create":
            record = store.create(args.name, args.version, args.loader, args.loader_version)
            print(record.id)
        elif args.command == "list":
            for record in store.list_instances():
                print(f"{record.id}  {record.state.value:<13} {record.name} ({record.version_id()})")
        elif args.command == "delete":
            store.delete(args.instance, delete_version=args.delete_version)
        elif args.command == "check-java":
            supervisor = ProcessSupervisor(paths, store, versions, loaders, sink=sink)
            java = supervisor.check_java_compatibility(args.instance)
            status = "ok" if java.compatible else "incompatible"
            print(f"{java.path}: Java {java.actual_version}, needs {java.required_version} ({status})")
            return 0 if java.compatible else 1
        elif args.command == "setup":
            await install_instance(args.instance, store, versions, loaders, RuntimeResolver(paths, fetcher), sink)
        elif args.command == "launch":
            supervisor = ProcessSupervisor(paths, store, versions, loaders, sink=sink)
            return await _launch_and_wait(supervisor, args.instance)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_launcher_config(args.config or pathlib.Path.cwd() / CONFIG_FILENAME)
    except LauncherError as e:
        log.error(str(e))
        return 1
    logging.getLogger().setLevel(logging.DEBUG if args.verbose else config.log_level.upper())

    try:
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        log.info("Cancelled by user.")
        return 130
    except LauncherError as e:
        log.error(str(e))
        return 1


# --- Script Entry Point ---
if __name__ == "__main__":
    sys.exit(main())
