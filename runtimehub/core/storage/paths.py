# runtimehub/core/storage/paths.py
from __future__ import annotations
from pathlib import Path
import os
import sys


def default_app_support_root() -> Path:
    """Per-user application support directory for the host platform"""
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support"
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        return Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    xdg = os.environ.get("XDG_DATA_HOME")
    return Path(xdg) if xdg else Path.home() / ".local" / "share"

def product_root(app_support_root: Path, product: str) -> Path:
    return app_support_root / product

def extensions_root(app_support_root: Path, product: str) -> Path:
    return product_root(app_support_root, product) / "Extensions"

def runtime_install_root(app_support_root: Path, product: str, extension_id: str) -> Path:
    """<app-support>/<product>/Extensions/<id>/runtime (versions live below it)"""
    return extensions_root(app_support_root, product) / extension_id / "runtime"

def runtime_version_dir(install_root: Path, version: str) -> Path:
    return install_root / version

def is_within(path: Path, root: Path) -> bool:
    """True when path (after resolving symlinks) lies inside root"""
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False
