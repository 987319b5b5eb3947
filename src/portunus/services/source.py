"""Migration Source - discovers migrations in a directory.

Migrations live in one flat directory. Three layouts are accepted:

- ``<version>_<label>.up.sql`` + ``<version>_<label>.down.sql``
- ``<version>_<label>.sql``: up only, unless the file carries
  ``-- migrate:up`` / ``-- migrate:down`` (or ``-- Up Migration`` /
  ``-- Down Migration``) section markers
- ``v<version>_<label>.py``: a module defining ``VERSION``, ``DESCRIPTION``,
  ``UP_SQL`` and optionally ``DOWN_SQL``. The constants are read with
  ``ast``; the module is never imported.

``<version>`` is a run of digits, conventionally a zero-padded sequence number
or a UTC ``YYYYMMDDHHMMSS`` timestamp. Loading never touches the database.
"""

import ast
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog

from portunus.core.errors import DuplicateIdentityError, MalformedMigrationError
from portunus.domain.migration import Migration, compute_checksum
from portunus.services.statements import split_sections, split_statements

log = structlog.get_logger()

PAIRED_PATTERN = re.compile(r"^(\d+)_(.+)\.(up|down)\.sql$", re.IGNORECASE)
SINGLE_PATTERN = re.compile(r"^(\d+)_(.+)\.sql$", re.IGNORECASE)
MODULE_PATTERN = re.compile(r"^v(\d+)_(\w+)\.py$")

MODULE_CONSTANTS = ("VERSION", "DESCRIPTION", "UP_SQL", "DOWN_SQL")

TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass
class _Script:
    """Raw text of one direction of a migration, before statement splitting."""

    path: Path
    label: str
    text: str


@dataclass
class _Parts:
    version: int
    up: Optional[_Script] = None
    down: Optional[_Script] = None
    paired: bool = True  # False for single-file and module migrations

    def paths(self) -> list[str]:
        found = [self.up.path if self.up else None, self.down.path if self.down else None]
        return [str(p) for p in found if p is not None]


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedMigrationError(f"cannot read file: {e}", str(path)) from e


def _read_module_constants(path: Path) -> dict[str, object]:
    """Module-level literal assignments of the migration constants."""
    try:
        tree = ast.parse(_read_text(path), filename=str(path))
    except SyntaxError as e:
        raise MalformedMigrationError(f"invalid Python: {e.msg} (line {e.lineno})", str(path)) from e

    constants: dict[str, object] = {}
    for node in tree.body:
        if isinstance(node, ast.Assign) and len(node.targets) == 1:
            target, value = node.targets[0], node.value
        elif isinstance(node, ast.AnnAssign) and node.value is not None:
            target, value = node.target, node.value
        else:
            continue
        if isinstance(target, ast.Name) and target.id in MODULE_CONSTANTS:
            try:
                constants[target.id] = ast.literal_eval(value)
            except ValueError as e:
                raise MalformedMigrationError(
                    f"{target.id} must be a literal", str(path)
                ) from e
    return constants


class MigrationSource:
    """Loads and validates every migration in a directory.

    Args:
        directory: Directory holding the migration files.
        require_reversible: Reject migrations without down statements.
    """

    def __init__(self, directory: Path, require_reversible: bool = False):
        self._directory = Path(directory)
        self._require_reversible = require_reversible
        self._log = log.bind(component="migration_source", directory=str(self._directory))

    @property
    def directory(self) -> Path:
        return self._directory

    def load(self) -> tuple[Migration, ...]:
        """Parse every migration, sorted ascending by version.

        Raises:
            DuplicateIdentityError: two files claim the same version.
            MalformedMigrationError: a file cannot be parsed or paired.
        """
        if not self._directory.is_dir():
            raise MalformedMigrationError("migration directory does not exist", str(self._directory))

        parts: dict[int, _Parts] = {}
        for path in sorted(self._directory.iterdir()):
            if path.name.startswith(".") or not path.is_file():
                continue
            self._collect(path, parts)

        migrations = tuple(self._build(parts[v]) for v in sorted(parts))
        self._check_widths(parts)

        self._log.debug(
            "migrations_discovered",
            count=len(migrations),
            irreversible=sum(1 for m in migrations if not m.reversible),
        )
        return migrations

    def _collect(self, path: Path, parts: dict[int, _Parts]) -> None:
        name = path.name

        match = PAIRED_PATTERN.match(name)
        if match:
            version, label, kind = int(match.group(1)), match.group(2), match.group(3).lower()
            self._add_paired(parts, version, kind, _Script(path, label, _read_text(path)))
            return

        match = SINGLE_PATTERN.match(name)
        if match:
            version, label = int(match.group(1)), match.group(2)
            text = _read_text(path)
            try:
                up_text, down_text = split_sections(text)
            except ValueError as e:
                raise MalformedMigrationError(str(e), str(path)) from e
            self._add_single(parts, version, path, label, up_text, down_text)
            return

        if name.lower().endswith(".sql"):
            raise MalformedMigrationError(
                "file name must look like <version>_<label>.sql or <version>_<label>.up.sql",
                str(path),
            )

        match = MODULE_PATTERN.match(name)
        if match:
            self._add_module(parts, int(match.group(1)), match.group(2), path)

    def _add_paired(self, parts: dict[int, _Parts], version: int, kind: str, script: _Script) -> None:
        existing = parts.get(version)
        if existing is None:
            existing = parts[version] = _Parts(version)
        elif not existing.paired or getattr(existing, kind) is not None:
            raise DuplicateIdentityError(version, existing.paths() + [str(script.path)])
        else:
            other = existing.up or existing.down
            if other is not None and other.label != script.label:
                raise MalformedMigrationError(
                    f"up and down scripts disagree on the label ('{other.label}' vs '{script.label}')",
                    str(script.path),
                )
        setattr(existing, kind, script)

    def _add_single(
        self,
        parts: dict[int, _Parts],
        version: int,
        path: Path,
        label: str,
        up_text: str,
        down_text: Optional[str],
    ) -> None:
        if version in parts:
            raise DuplicateIdentityError(version, parts[version].paths() + [str(path)])
        parts[version] = _Parts(
            version,
            up=_Script(path, label, up_text),
            down=_Script(path, label, down_text) if down_text is not None else None,
            paired=False,
        )

    def _add_module(self, parts: dict[int, _Parts], version: int, label: str, path: Path) -> None:
        constants = _read_module_constants(path)

        declared = constants.get("VERSION")
        if declared is not None and declared != version:
            raise MalformedMigrationError(
                f"VERSION = {declared!r} does not match the file name", str(path)
            )
        up_sql = constants.get("UP_SQL")
        if not isinstance(up_sql, str):
            raise MalformedMigrationError("UP_SQL must be a string", str(path))
        down_sql = constants.get("DOWN_SQL")
        if down_sql is not None and not isinstance(down_sql, str):
            raise MalformedMigrationError("DOWN_SQL must be a string", str(path))

        description = constants.get("DESCRIPTION")
        if isinstance(description, str) and description.strip():
            label = description.strip()

        self._add_single(parts, version, path, label, up_sql, down_sql)

    def _build(self, parts: _Parts) -> Migration:
        if parts.up is None:
            assert parts.down is not None
            raise MalformedMigrationError("down script has no matching up script", str(parts.down.path))

        up = self._split(parts.up)
        if not up:
            raise MalformedMigrationError("up script contains no statements", str(parts.up.path))

        down = self._split(parts.down) if parts.down is not None else []
        if self._require_reversible and not down:
            raise MalformedMigrationError(
                "migration has no down statements and reversibility is required",
                str(parts.up.path),
            )

        return Migration(
            version=parts.version,
            label=parts.up.label,
            up=tuple(up),
            down=tuple(down),
            checksum=compute_checksum(parts.up.text),
            source=parts.up.path,
        )

    @staticmethod
    def _split(script: _Script) -> list[str]:
        try:
            return split_statements(script.text)
        except ValueError as e:
            raise MalformedMigrationError(str(e), str(script.path)) from e

    def _check_widths(self, parts: dict[int, _Parts]) -> None:
        # Mixed widths still sort correctly (numerically) but read badly in listings
        widths = set()
        for item in parts.values():
            script = item.up or item.down
            if script is not None:
                widths.add(len(script.path.name.lstrip("v").split("_", 1)[0]))
        if len(widths) > 1:
            self._log.warning("inconsistent_version_width", widths=sorted(widths))


def load_migrations(directory: Path, require_reversible: bool = False) -> tuple[Migration, ...]:
    """Convenience wrapper around MigrationSource.load()."""
    return MigrationSource(directory, require_reversible=require_reversible).load()


def slugify(label: str) -> str:
    """Lowercase ``label`` and collapse everything else to underscores."""
    return re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")


def _existing_versions(directory: Path) -> list[int]:
    versions = []
    for path in directory.iterdir():
        match = SINGLE_PATTERN.match(path.name) or MODULE_PATTERN.match(path.name)
        if match:
            versions.append(int(match.group(1)))
    return versions


def create_migration(
    directory: Path,
    label: str,
    reversible: bool = True,
    now: Optional[datetime] = None,
) -> list[Path]:
    """Create empty script files for a new migration.

    The version is the current UTC timestamp, bumped past the newest existing
    version so the new migration always sorts last.

    Returns:
        Created paths (up first).
    """
    slug = slugify(label)
    if not slug:
        raise ValueError(f"label {label!r} has no usable characters")

    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    moment = now or datetime.now(timezone.utc)
    version = int(moment.strftime(TIMESTAMP_FORMAT))
    existing = _existing_versions(directory)
    if existing and max(existing) >= version:
        version = max(existing) + 1

    if reversible:
        paths = [
            directory / f"{version}_{slug}.up.sql",
            directory / f"{version}_{slug}.down.sql",
        ]
        bodies = [f"-- {label}\n", f"-- Revert: {label}\n"]
    else:
        paths = [directory / f"{version}_{slug}.sql"]
        bodies = [f"-- {label}\n"]

    for path, body in zip(paths, bodies):
        with open(path, "x", encoding="utf-8") as f:
            f.write(body)

    log.info("migration_created", version=version, paths=[str(p) for p in paths])
    return paths
