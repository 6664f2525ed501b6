"""
SQLite metadata store.

Holds three kinds of state:
- config_flag: named byte values (completion flags, manifest dialect,
  cached listing page, per-variant pull status)
- catalog_entry / variant_record: the harvested catalog
- media_type: manifest layer media type -> (category, file extension)

Every write method runs in exactly one transaction; on ``sqlite3.Error`` the
transaction is rolled back and ``StoreError`` is raised. Concurrent asyncio
tasks serialize multi-statement work through ``MetadataStore.lock``.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

from modelpull.errors import SchemaMismatchError, StoreError
from modelpull.store.models import CatalogEntry, CompletionStatus, VariantRecord
from modelpull.transfer.checksum import digest

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

INIT_STATUS = "init_status"
CATALOG_SYNC_STATUS = "catalog_sync_status"
CATALOG_LISTING_HTML = "catalog_listing_html"
CATALOG_LISTING_DIGEST = "catalog_listing_digest"
MANIFEST_SCHEMA_VERSION = "manifest_schema_version"
MANIFEST_MEDIA_TYPE = "manifest_media_type"

_UPSERT_FLAG = """
insert into config_flag (name, value)
values (?, ?)
on conflict (name) do update set value      = excluded.value,
                                 updated_at = strftime('%s', 'now')
"""

_UPSERT_CATALOG_ENTRY = """
insert into catalog_entry (id, title, href, raw_digest, introduction, pull_count,
                           tag_count, summary, readme, updated_time)
values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
on conflict (title, href) do update set raw_digest   = excluded.raw_digest,
                                        introduction = excluded.introduction,
                                        pull_count   = excluded.pull_count,
                                        tag_count    = excluded.tag_count,
                                        summary      = excluded.summary,
                                        readme       = excluded.readme,
                                        updated_time = excluded.updated_time,
                                        updated_at   = strftime('%s', 'now')
"""

_UPSERT_VARIANT = """
insert into variant_record (id, name, href, size, context, input, hash, catalog_entry_id)
values (?, ?, ?, ?, ?, ?, ?, ?)
on conflict (name) do update set href             = excluded.href,
                                 size             = excluded.size,
                                 context          = excluded.context,
                                 input            = excluded.input,
                                 hash             = excluded.hash,
                                 catalog_entry_id = excluded.catalog_entry_id,
                                 updated_at       = strftime('%s', 'now')
"""

_VARIANT_COLUMNS = (
    "name, href, size, context, input, hash, catalog_entry_id, path, template_path, blobs"
)


def pull_status_flag(variant: str) -> str:
    """Flag name tracking the pull of one variant."""
    return f"pull_status:{variant}"


def detail_page_flag(href: str) -> str:
    """Flag name holding the raw detail page of one catalog entry."""
    return f"catalog_detail:{href}"


def _new_id() -> str:
    return uuid.uuid4().hex


def _row_to_variant(row: sqlite3.Row) -> VariantRecord:
    return VariantRecord(
        name=row["name"],
        href=row["href"],
        size=row["size"] or "",
        context=row["context"] or "",
        input=row["input"] or "",
        hash=row["hash"] or "",
        catalog_entry_id=row["catalog_entry_id"],
        path=row["path"],
        template_path=row["template_path"],
        blobs=orjson.loads(row["blobs"] or "{}"),
    )


class MetadataStore:
    """SQLite-backed metadata store.

    Not thread-safe; meant to be shared by asyncio tasks on a single loop.
    """

    def __init__(self, path: Path | str) -> None:
        """
        Open (and initialize if needed) the store.

        Args:
            path: SQLite file path, or ``":memory:"``.

        Raises:
            StoreError: If the file cannot be opened or the schema fails.
        """
        self.path = path if path == ":memory:" else Path(path)
        self.lock = asyncio.Lock()
        try:
            if isinstance(self.path, Path):
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("pragma foreign_keys = on")
            self._init_schema()
        except (OSError, sqlite3.Error) as e:
            msg = f"Failed to open metadata store at {path}: {e}"
            raise StoreError(msg) from e

    def _init_schema(self) -> None:
        user_version = self._conn.execute("pragma user_version").fetchone()[0]
        if user_version > 0:
            return
        self._conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
        logger.info("Initialized metadata store", extra={"db_path": str(self.path)})

    def close(self) -> None:
        """Close the underlying connection."""
        self._conn.close()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.Error as e:
            logger.error("Store transaction rolled back", extra={"action": action, "error": str(e)})
            msg = f"Failed to {action}: {e}"
            raise StoreError(msg) from e

    def _query_one(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Row | None:
        try:
            return self._conn.execute(sql, tuple(params)).fetchone()
        except sqlite3.Error as e:
            msg = f"Query failed: {e}"
            raise StoreError(msg) from e

    # -- flags -------------------------------------------------------------

    def get_flag(self, name: str) -> bytes | None:
        """Raw value of a flag, or None if it was never set."""
        row = self._query_one("select value from config_flag where name = ?", (name,))
        return None if row is None else bytes(row["value"])

    def set_flag(self, name: str, value: bytes | str) -> None:
        """Insert or overwrite a flag."""
        if isinstance(value, str):
            value = value.encode("utf-8")
        with self._transaction(f"set flag {name}") as conn:
            conn.execute(_UPSERT_FLAG, (name, value))

    def get_status(self, name: str) -> CompletionStatus:
        return CompletionStatus.from_bytes(self.get_flag(name))

    def set_status(self, name: str, status: CompletionStatus) -> None:
        self.set_flag(name, status.to_bytes())
        logger.debug("Status updated", extra={"flag": name, "status": status.value})

    # -- manifest dialect --------------------------------------------------

    def manifest_dialect(self) -> tuple[int, str]:
        """Recorded (schemaVersion, mediaType) of remote manifests.

        Raises:
            StoreError: If the dialect flags are missing or malformed.
        """
        version = self.get_flag(MANIFEST_SCHEMA_VERSION)
        media_type = self.get_flag(MANIFEST_MEDIA_TYPE)
        if version is None or media_type is None:
            msg = "Manifest dialect flags are missing from the store"
            raise StoreError(msg)
        try:
            return int(version.decode("utf-8")), media_type.decode("utf-8")
        except ValueError as e:
            msg = f"Malformed manifest schema version flag: {version!r}"
            raise StoreError(msg) from e

    def check_manifest_dialect(self, schema_version: int, media_type: str) -> None:
        """
        Verify a manifest's dialect against the recorded one.

        Raises:
            SchemaMismatchError: If either value differs.
        """
        expected_version, expected_media_type = self.manifest_dialect()
        if schema_version != expected_version or media_type != expected_media_type:
            msg = (
                f"Manifest dialect ({schema_version}, {media_type}) does not match "
                f"the recorded dialect ({expected_version}, {expected_media_type}); "
                "the remote registry needs re-adapting"
            )
            raise SchemaMismatchError(msg)

    def media_category(self, media_type: str) -> tuple[str, str] | None:
        """(category, extension) for a layer media type, None if unknown."""
        row = self._query_one(
            "select category, extension from media_type where media_type = ?",
            (media_type,),
        )
        return None if row is None else (row["category"], row["extension"])

    # -- catalog -----------------------------------------------------------

    def catalog_digests(self) -> dict[str, str]:
        """Map of catalog entry title -> raw listing digest."""
        try:
            rows = self._conn.execute("select title, raw_digest from catalog_entry").fetchall()
        except sqlite3.Error as e:
            msg = f"Failed to read catalog digests: {e}"
            raise StoreError(msg) from e
        return {row["title"]: row["raw_digest"] for row in rows}

    def save_listing(self, html: str) -> str:
        """Persist the raw listing page and its digest together.

        Returns:
            The base64 SHA-256 digest of the page.
        """
        page_digest = digest(html.encode("utf-8"))
        with self._transaction("save listing page") as conn:
            conn.execute(_UPSERT_FLAG, (CATALOG_LISTING_HTML, html.encode("utf-8")))
            conn.execute(_UPSERT_FLAG, (CATALOG_LISTING_DIGEST, page_digest.encode("utf-8")))
        return page_digest

    def upsert_catalog_entry(
        self,
        entry: CatalogEntry,
        variants: Iterable[VariantRecord],
        *,
        detail_html: str | None = None,
    ) -> str:
        """
        Write an entry and all of its variants as one unit.

        Args:
            entry: Catalog entry (keyed by title + href).
            variants: Variants (keyed by name) to attach to the entry.
            detail_html: Raw detail page, kept for provenance.

        Returns:
            Id of the stored catalog entry.

        Raises:
            StoreError: If any statement fails; nothing of the entry is kept.
        """
        with self._transaction(f"upsert catalog entry {entry.title}") as conn:
            entry_id = self._write_entry(conn, entry)
            for variant in variants:
                conn.execute(
                    _UPSERT_VARIANT,
                    (
                        _new_id(),
                        variant.name,
                        variant.href,
                        variant.size,
                        variant.context,
                        variant.input,
                        variant.hash,
                        entry_id,
                    ),
                )
            if detail_html is not None:
                conn.execute(_UPSERT_FLAG, (detail_page_flag(entry.href), detail_html.encode("utf-8")))
        logger.info("Catalog entry stored", extra={"title": entry.title})
        return entry_id

    def _write_entry(self, conn: sqlite3.Connection, entry: CatalogEntry) -> str:
        conn.execute(
            _UPSERT_CATALOG_ENTRY,
            (
                _new_id(),
                entry.title,
                entry.href,
                entry.raw_digest,
                entry.introduction,
                entry.pull_count,
                entry.tag_count,
                entry.summary,
                entry.readme,
                entry.updated_time,
            ),
        )
        # The upsert keeps the original id on conflict, so read back the live one.
        row = conn.execute(
            "select id from catalog_entry where title = ? and href = ?",
            (entry.title, entry.href),
        ).fetchone()
        return row["id"]

    def get_catalog_entry(self, title: str) -> CatalogEntry | None:
        row = self._query_one(
            """
            select title, href, raw_digest, introduction, pull_count, tag_count,
                   summary, readme, updated_time
            from catalog_entry where title = ?
            """,
            (title,),
        )
        if row is None:
            return None
        return CatalogEntry(**{key: row[key] or "" for key in row.keys()})

    def get_variant(self, name: str) -> VariantRecord | None:
        row = self._query_one(
            f"select {_VARIANT_COLUMNS} from variant_record where name = ?",
            (name,),
        )
        return None if row is None else _row_to_variant(row)

    def variant_exists(self, name: str) -> bool:
        return self._query_one("select 1 from variant_record where name = ?", (name,)) is not None

    def first_variant_name(self, model: str) -> str | None:
        """Earliest recorded ``<model>:<category>`` variant name, if any."""
        row = self._query_one(
            "select name from variant_record where name like ? escape '\\' order by rowid limit 1",
            (_like_prefix(model) + ":%",),
        )
        return None if row is None else row["name"]

    # -- pulled blobs ------------------------------------------------------

    def register_blob(
        self,
        variant: str,
        category: str,
        path: Path | str,
        size: int,
        media_type: str,
    ) -> None:
        """
        Record a pulled blob against its variant.

        Model and template blobs also populate the dedicated ``path`` and
        ``template_path`` columns.

        Raises:
            StoreError: If the variant is unknown or the write fails.
        """
        with self._transaction(f"register {category} blob for {variant}") as conn:
            row = conn.execute(
                "select blobs from variant_record where name = ?", (variant,)
            ).fetchone()
            if row is None:
                msg = f"Cannot register blob: variant {variant!r} is not in the catalog"
                raise StoreError(msg)
            blobs = orjson.loads(row["blobs"] or "{}")
            blobs[category] = {"path": str(path), "size": size, "media_type": media_type}
            conn.execute(
                "update variant_record set blobs = ?, updated_at = strftime('%s', 'now') where name = ?",
                (orjson.dumps(blobs).decode("utf-8"), variant),
            )
            if category == "model":
                conn.execute("update variant_record set path = ? where name = ?", (str(path), variant))
            elif category == "template":
                conn.execute(
                    "update variant_record set template_path = ? where name = ?",
                    (str(path), variant),
                )
        logger.debug(
            "Blob registered",
            extra={"variant": variant, "category": category, "size": size},
        )


def _like_prefix(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
