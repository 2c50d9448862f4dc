"""
Per-run Plugin Loader.

This module provides dynamic loading of manifest entry points and command
handlers.

Key features:
- importlib integration for manifest modules and handler files
- JSON manifest documents
- Cache scoped to one ModuleLoader instance (one discovery run)
- Handler references: ``./file.py#attr``, ``./file.py`` and ``package.module:attr``
"""

import hashlib
import importlib
import importlib.util
import json
import sys
import threading
from pathlib import Path
from types import ModuleType
from typing import Any

from kblabs.plugin.manifest import PluginManifest, parse_manifest

# Module attributes consulted for the manifest object, in order
MANIFEST_EXPORTS = ("default", "manifest", "commands")


class LoaderError(Exception):
    """Base exception for loader-related errors."""

    pass


class ModuleLoader:
    """
    Loader registry for one discovery run.

    Modules loaded by one instance are cached on that instance only and
    registered in sys.modules under instance-specific names, so separate
    runs never observe each other's modules.
    """

    def __init__(self, prefix: str = "kblabs_plugin"):
        self._prefix = f"{prefix}_{id(self):x}"
        self._modules: dict[Path, ModuleType] = {}
        # Keyed by (path, fallback id): legacy manifests take their id from the caller
        self._manifests: dict[tuple[Path, str | None], PluginManifest] = {}
        # Strategies share one loader from worker threads
        self._lock = threading.RLock()

    def _module_name(self, path: Path) -> str:
        digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()[:12]
        return f"{self._prefix}_{path.stem.replace('-', '_')}_{digest}"

    def load_module(self, path: Path) -> ModuleType:
        """
        Load a Python file as a module.

        Args:
            path: Path to the ``.py`` file

        Returns:
            Loaded module (cached per loader)

        Raises:
            LoaderError: If the file is missing or fails to execute
        """
        path = Path(path).resolve()

        with self._lock:
            if path in self._modules:
                return self._modules[path]

            if not path.is_file():
                raise LoaderError(f"Module not found: {path}")

            module_name = self._module_name(path)
            try:
                spec = importlib.util.spec_from_file_location(module_name, path)
                if spec is None or spec.loader is None:
                    raise LoaderError(f"Failed to create module spec for {path}")

                module = importlib.util.module_from_spec(spec)
                sys.modules[module_name] = module
                spec.loader.exec_module(module)
            except LoaderError:
                sys.modules.pop(module_name, None)
                raise
            except Exception as e:
                sys.modules.pop(module_name, None)
                raise LoaderError(f"Failed to load module {path}: {e}") from e

            self._modules[path] = module
            return module

    def load_manifest_object(self, path: Path) -> Any:
        """
        Load the raw manifest object from an entry point.

        JSON documents are parsed; Python modules supply their ``default``,
        ``manifest`` or ``commands`` attribute. A bare command list is
        wrapped as ``{"commands": [...]}``.

        Raises:
            LoaderError: If the entry point cannot be read or exports nothing
        """
        path = Path(path).resolve()

        if path.suffix == ".json":
            try:
                with open(path, encoding="utf-8") as f:
                    return json.load(f)
            except json.JSONDecodeError as e:
                raise LoaderError(f"Failed to parse manifest JSON {path}: {e}") from e
            except OSError as e:
                raise LoaderError(f"Failed to read manifest {path}: {e}") from e

        if path.suffix != ".py":
            raise LoaderError(f"Unsupported manifest entry point: {path}")

        module = self.load_module(path)
        for name in MANIFEST_EXPORTS:
            value = getattr(module, name, None)
            if value is None:
                continue
            if name == "commands" and isinstance(value, (list, tuple)):
                return {"commands": list(value)}
            return value

        raise LoaderError(
            f"Manifest module {path} exports none of: {', '.join(MANIFEST_EXPORTS)}"
        )

    def load_manifest(self, path: Path, fallback_id: str | None = None) -> PluginManifest:
        """
        Load and parse a manifest entry point (cached per loader).

        Raises:
            LoaderError: If loading fails
            ManifestError: If the manifest is invalid
        """
        path = Path(path).resolve()
        with self._lock:
            key = (path, fallback_id)
            if key not in self._manifests:
                raw = self.load_manifest_object(path)
                self._manifests[key] = parse_manifest(raw, path, fallback_id=fallback_id)
            return self._manifests[key]

    def resolve_handler(self, ref: str, base_dir: Path) -> Any:
        """
        Resolve a handler reference to the object it names.

        Args:
            ref: ``path#attr``, ``path`` (attribute ``run``) or ``module:attr``
            base_dir: Directory relative file references start from

        Returns:
            The referenced attribute (a callable or an object exposing ``run``)

        Raises:
            LoaderError: If the reference cannot be resolved
        """
        if "#" in ref:
            file_ref, attr = ref.split("#", 1)
        elif ref.endswith(".py") or "/" in ref or "\\" in ref:
            file_ref, attr = ref, "run"
        elif ":" in ref:
            module_name, attr = ref.split(":", 1)
            try:
                module = importlib.import_module(module_name)
            except ImportError as e:
                raise LoaderError(f"Cannot import handler module {module_name}: {e}") from e
            return self._attribute(module, attr, ref)
        else:
            raise LoaderError(f"Invalid handler reference: {ref!r}")

        path = Path(file_ref)
        if not path.is_absolute():
            path = base_dir / path
        return self._attribute(self.load_module(path), attr or "run", ref)

    @staticmethod
    def _attribute(module: ModuleType, attr: str, ref: str) -> Any:
        try:
            return getattr(module, attr)
        except AttributeError as e:
            raise LoaderError(f"Handler {ref!r} not found: no attribute {attr!r}") from e

    def is_loaded(self, path: Path) -> bool:
        return Path(path).resolve() in self._modules

    def clear(self) -> None:
        """Forget every module loaded by this instance."""
        with self._lock:
            for path in list(self._modules):
                sys.modules.pop(self._module_name(path), None)
            self._modules.clear()
            self._manifests.clear()
