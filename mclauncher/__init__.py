"""Install and launch engine for Minecraft-style game clients."""
from .config import Paths, Settings
from .download import ContentFetcher
from .errors import (BaseMismatchError, InstallError, IntegrityError, LauncherError, LoaderError,
                     LoaderNetworkError, NetworkError, ProcessError, SchemaError)
from .instances import InstanceStore, install_instance
from .loader import LoaderResolver
from .supervisor import ProcessRegistry, ProcessSupervisor
from .versions import VersionResolver

__version__ = '1.0.0'
