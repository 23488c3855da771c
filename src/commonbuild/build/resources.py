"""Package resource scanner — rebuild the PackageResource tree from disk."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from commonbuild.build.diagnostics import Diagnostic, file_diagnostic
from commonbuild.build.fingerprint import digest_manifest
from commonbuild.core.errors import ValidationError
from commonbuild.core.models import PackageName, PackageResource

SECTION = "CommonML"
SOURCE_DIR = "src"
DEPENDENCY_DIR = "node_modules"

KNOWN_SECTION_FIELDS = (
    "exports",
    "compileFlags",
    "linkFlags",
    "extensions",
    "preprocessor",
    "findlibPackages",
    "dependencyCommand",
    "compileCommand",
    "linkCommand",
)


@dataclass
class ScanResult:
    root_name: PackageName
    resources: dict[PackageName, PackageResource] = field(default_factory=dict)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics


def read_package_json(package_dir: Path) -> dict | None:
    """Parse ``package.json`` in ``package_dir``. Returns None if there is none."""
    path = Path(package_dir) / "package.json"
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ValidationError(
            f"Invalid {path} ({exc}). Common mistakes: single quotes, trailing commas."
        ) from exc
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {path}: top level must be an object")
    return data


def _has_section(manifest: dict) -> bool:
    return any(key.lower() == SECTION.lower() for key in manifest)


def scan_sources(package_dir: Path) -> tuple[list[str], list[int], list[str], list[Diagnostic]]:
    """Walk ``<package>/src`` recursively in sorted order.

    Returns (files, mtimes_ns, directories, diagnostics). Symlinked
    directories are reported, not followed.
    """
    files: list[str] = []
    mtimes: list[int] = []
    directories: list[str] = []
    diagnostics: list[Diagnostic] = []

    source_dir = Path(package_dir) / SOURCE_DIR
    if not source_dir.is_dir():
        diagnostics.append(
            file_diagnostic(
                str(package_dir),
                f"Does not appear to be a package with a `{SOURCE_DIR}` directory: {package_dir}",
            )
        )
        return files, mtimes, directories, diagnostics

    def walk(directory: str) -> None:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
        for entry in entries:
            if entry.is_dir(follow_symlinks=True):
                if entry.is_symlink():
                    diagnostics.append(
                        file_diagnostic(
                            entry.path,
                            f"Symlinks not supported in {SOURCE_DIR}: {entry.path} -> "
                            f"{os.path.realpath(entry.path)}",
                        )
                    )
                    continue
                directories.append(entry.path)
                walk(entry.path)
            else:
                files.append(entry.path)
                mtimes.append(entry.stat().st_mtime_ns)

    walk(str(source_dir))
    return files, mtimes, directories, diagnostics


def find_subpackages(package_dir: Path) -> list[tuple[PackageName, Path, dict]]:
    """Packages installed under ``<package>/node_modules`` that carry a build section."""
    modules_dir = Path(package_dir) / DEPENDENCY_DIR
    if not modules_dir.is_dir():
        return []
    found = []
    for entry in sorted(modules_dir.iterdir(), key=lambda p: p.name):
        real_path = Path(os.path.realpath(entry))
        if not real_path.is_dir() or entry.name == SECTION:
            continue
        manifest = read_package_json(real_path)
        if manifest is None or not _has_section(manifest):
            continue
        name = manifest.get("name")
        if not name:
            raise ValidationError(f"Cannot find `name` field in package.json for {entry}")
        found.append((name, real_path, manifest))
    return found


def verify_manifest(name: str | None, package_dir: Path, manifest: dict) -> list[Diagnostic]:
    """Checks that only need the package.json itself."""
    json_path = str(Path(package_dir) / "package.json")
    prefix = f"Invalid package.json for {name} at {json_path}.\n"

    if SECTION not in manifest:
        if _has_section(manifest):
            return [file_diagnostic(json_path, prefix + f'Fix spelling in package.json: it should be spelled "{SECTION}".')]
        return []

    section = manifest[SECTION] or {}
    found = []
    if not name or not name[0].isupper():
        found.append(file_diagnostic(json_path, prefix + "package.json `name` must begin with a capital letter."))
    if section.get("exports") is None:
        found.append(file_diagnostic(json_path, prefix + "Must specify exports"))
    if "export" in section:
        found.append(file_diagnostic(json_path, prefix + f'"export" is not a valid field of "{SECTION}" in package.json'))

    proper = {key.lower(): key for key in KNOWN_SECTION_FIELDS}
    for key in section:
        if key.lower() in proper and key != proper[key.lower()]:
            found.append(
                file_diagnostic(
                    json_path,
                    prefix + f"{name} has a misspelled field in its package.json/{SECTION} "
                    f"(check the casing of {key}).",
                )
            )
    return found


def verify_package(resource: PackageResource, manifest: dict) -> list[Diagnostic]:
    """Checks that need the scanned sources and subpackages."""
    json_path = str(Path(resource.real_path) / "package.json")
    name = resource.package_name
    prefix = f"Invalid package {name} at {resource.real_path}. "
    section = resource.manifest
    found = []

    for source in resource.source_files:
        stem, ext = os.path.splitext(os.path.basename(source))
        if ext in (".ml", ".mli") and stem.lower() == name.lower():
            found.append(
                file_diagnostic(source, prefix + f"Package cannot contain module with same name as project ({source})")
            )

    for export in section.get("exports") or []:
        if export == "":
            found.append(file_diagnostic(json_path, prefix + "Exported module name is the empty string"))
            continue
        if os.path.splitext(export)[1]:
            found.append(file_diagnostic(json_path, prefix + "Exports must be module names, not files"))
        if not export[0].isupper():
            found.append(file_diagnostic(json_path, prefix + "Exports must be module names - capitalized leading chars."))
        if export.lower() == name.lower():
            found.append(file_diagnostic(json_path, prefix + f"Cannot export the same module name as the package name: {export}"))

    for flags_key in ("compileFlags", "linkFlags"):
        if "-g" in (section.get(flags_key) or []):
            found.append(
                file_diagnostic(
                    json_path,
                    prefix + f"{flags_key} contains -g; debug builds are selected with --debug, not per package.",
                )
            )

    declared = manifest.get("dependencies")
    if declared is not None:
        for sub in resource.subpackage_names:
            if sub not in declared:
                found.append(
                    file_diagnostic(
                        json_path,
                        f'Package named "{sub}" was found in {name}\'s {DEPENDENCY_DIR} directory, '
                        f"but {name} doesn't depend on {sub}. Either add {sub} to the dependencies "
                        f"in {json_path}, or remove it from "
                        f"{Path(resource.real_path) / DEPENDENCY_DIR}.",
                    )
                )
    return found


def scan_packages(root_dir: str | Path) -> ScanResult:
    """Scan the package rooted at ``root_dir`` and everything under its node_modules.

    Structural problems are returned as diagnostics; only unreadable
    manifests raise ValidationError. A package name seen twice keeps its
    first entry.
    """
    root_dir = Path(os.path.realpath(root_dir))
    manifest = read_package_json(root_dir)
    if manifest is None:
        raise ValidationError(f"No package.json for package at {root_dir}")
    if not _has_section(manifest):
        raise ValidationError(f"{root_dir / 'package.json'} has no {SECTION} section")

    result = ScanResult(root_name=manifest.get("name") or "")
    visiting: set[PackageName] = set()

    def record(package_dir: Path, package_manifest: dict) -> None:
        name = package_manifest.get("name")
        invalid = verify_manifest(name, package_dir, package_manifest)
        if invalid:
            result.diagnostics.extend(invalid)
            return

        visiting.add(name)
        subpackage_names = []
        for sub_name, sub_dir, sub_manifest in find_subpackages(package_dir):
            if sub_name not in result.resources:
                if sub_name in visiting:
                    result.diagnostics.append(
                        file_diagnostic(
                            str(package_dir),
                            f"Circular dependency was detected from package {name} "
                            f"({package_dir}) to {sub_name} ({sub_dir})",
                        )
                    )
                else:
                    record(sub_dir, sub_manifest)
            subpackage_names.append(sub_name)
        visiting.discard(name)

        files, mtimes, directories, source_diagnostics = scan_sources(package_dir)
        result.diagnostics.extend(source_diagnostics)
        section = package_manifest.get(SECTION) or {}
        resource = PackageResource(
            package_name=name,
            real_path=str(package_dir),
            source_files=files,
            source_file_mtimes=mtimes,
            subpackage_names=subpackage_names,
            config_digest=digest_manifest(section),
            directories=directories,
            manifest=section,
        )
        result.resources[name] = resource
        result.diagnostics.extend(verify_package(resource, package_manifest))

    record(root_dir, manifest)
    return result
