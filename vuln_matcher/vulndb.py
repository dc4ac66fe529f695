# vuln_matcher/vulndb.py
import logging
import sqlite3
import threading
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timezone

from packaging.version import InvalidVersion, Version

from .config import Settings
from .cpe import Cpe
from .cwe import get_cwe_name
from .errors import DatabaseError, StoreClosedError
from .feed import is_rejected
from .matcher import get_matching_software
from .models import Reference, Vulnerability, VulnerableSoftware

logger = logging.getLogger(__name__)

DB_SCHEMA_VERSION = "1.0"

VERSION_KEY = "version"
LAST_CHECKED_KEY = "nvd.lastchecked"
FEED_LAST_MODIFIED_KEY = "nvd.feed.{feed_id}.lastmodified"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS vulnerability (
        cve_id TEXT PRIMARY KEY, description TEXT, cvss_score REAL,
        cvss_vector TEXT, cvss_version TEXT, published TEXT, last_modified TEXT,
        ecosystem TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS software (
        id INTEGER PRIMARY KEY AUTOINCREMENT, cve_id TEXT NOT NULL,
        part TEXT NOT NULL, vendor TEXT NOT NULL, product TEXT NOT NULL, cpe TEXT NOT NULL,
        version_start_including TEXT, version_start_excluding TEXT,
        version_end_including TEXT, version_end_excluding TEXT,
        vulnerable INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_software_vendor_product ON software (vendor, product)",
    "CREATE INDEX IF NOT EXISTS idx_software_cve ON software (cve_id)",
    """
    CREATE TABLE IF NOT EXISTS reference (
        id INTEGER PRIMARY KEY AUTOINCREMENT, cve_id TEXT NOT NULL,
        name TEXT, url TEXT NOT NULL, source TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_reference_cve ON reference (cve_id)",
    """
    CREATE TABLE IF NOT EXISTS cwe_entry (
        cve_id TEXT NOT NULL, cwe TEXT NOT NULL, PRIMARY KEY (cve_id, cwe)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS properties (
        id TEXT PRIMARY KEY, value TEXT
    )
    """,
)

_CHILD_TABLES = ("software", "reference", "cwe_entry")


def _normalize(value: str) -> str:
    return (value or "").strip().lower()


class DatabaseProperties:
    """Live view of the key/value properties persisted with the store."""

    def __init__(self, store: "VulnerabilityStore"):
        self._store = store
        self._properties: dict[str, str] = {}
        self.reload()

    def reload(self) -> None:
        self._properties = self._store._load_properties()

    def get_property(self, key: str, default: str | None = None) -> str | None:
        return self._properties.get(key, default)

    def save(self, key: str, value: str) -> None:
        self._store._save_property(key, value)
        self._properties[key] = value

    def is_empty(self) -> bool:
        return not self._store.data_exists()

    def __contains__(self, key):
        return key in self._properties

    # --- Feed freshness ---
    def get_feed_last_modified(self, feed_id: str) -> str | None:
        return self.get_property(FEED_LAST_MODIFIED_KEY.format(feed_id=feed_id))

    def save_feed_last_modified(self, feed_id: str, last_modified: str) -> None:
        self.save(FEED_LAST_MODIFIED_KEY.format(feed_id=feed_id), last_modified)

    def save_last_checked(self, when: datetime | None = None) -> None:
        when = when or datetime.now(timezone.utc)
        self.save(LAST_CHECKED_KEY, when.isoformat())

    def get_metadata(self) -> dict[str, str]:
        """Human readable copy of the properties, e.g. for an 'info' command."""
        return dict(sorted(self._properties.items()))


class VulnerabilityStore:
    """SQLite backed store of vulnerability records indexed by vendor/product.

    Lifecycle is explicit: ``open()``, ``commit()``, ``close()``. Writes happen inside
    one transaction per batch; every record update runs in its own savepoint so a
    failed or interrupted update never leaves a record half replaced.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.db_file = settings.database_file
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._closed = False
        self._properties: DatabaseProperties | None = None
        self._cache: dict[str, list[Vulnerability]] = {}

    # --- Lifecycle ---
    def open(self) -> "VulnerabilityStore":
        with self._lock:
            if self._connection is not None:
                return self
            try:
                self.db_file.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self.db_file), check_same_thread=False, isolation_level=None)
                for statement in _SCHEMA:
                    conn.execute(statement)
            except (sqlite3.Error, OSError) as e:
                raise DatabaseError(f"Unable to open vulnerability database {self.db_file}: {e}") from e
            self._connection = conn
            self._closed = False
            logger.debug(f"Opened vulnerability database {self.db_file}")
            try:
                self._check_schema_version()
                self._properties = DatabaseProperties(self)
            except Exception:
                self._connection = None
                conn.close()
                raise
            return self

    def _check_schema_version(self) -> None:
        stored = self._load_properties().get(VERSION_KEY)
        if stored is None:
            self._save_property(VERSION_KEY, DB_SCHEMA_VERSION)
            return
        try:
            compatible = Version(stored).major == Version(DB_SCHEMA_VERSION).major
        except InvalidVersion as e:
            raise DatabaseError(f"Invalid schema version '{stored}' in {self.db_file}") from e
        if not compatible:
            raise DatabaseError(
                f"Database schema {stored} is incompatible with {DB_SCHEMA_VERSION}; purge and rebuild {self.db_file}"
            )

    def is_open(self) -> bool:
        return self._connection is not None

    def commit(self) -> None:
        with self._lock:
            conn = self._conn()
            if conn.in_transaction:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    raise DatabaseError(f"Commit failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            try:
                if self._connection.in_transaction:
                    logger.warning("Closing the vulnerability database with uncommitted changes; rolling back")
                    self._connection.execute("ROLLBACK")
                self._connection.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing the vulnerability database: {e}")
            finally:
                self._connection = None
                self._closed = True
                self._cache.clear()

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None and self.is_open():
            self.commit()
        self.close()

    def _conn(self) -> sqlite3.Connection:
        if self._connection is None:
            if self._closed:
                raise StoreClosedError()
            raise StoreClosedError("The vulnerability store has not been opened")
        return self._connection

    def _begin(self, conn: sqlite3.Connection) -> None:
        if not conn.in_transaction:
            conn.execute("BEGIN")

    # --- Properties ---
    def _load_properties(self) -> dict[str, str]:
        with self._lock:
            try:
                rows = self._conn().execute("SELECT id, value FROM properties").fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to read database properties: {e}") from e
            return {k: v for k, v in rows}

    def _save_property(self, key: str, value: str) -> None:
        with self._lock:
            conn = self._conn()
            try:
                conn.execute(
                    "INSERT INTO properties (id, value) VALUES (?, ?) "
                    "ON CONFLICT(id) DO UPDATE SET value = excluded.value",
                    (key, str(value)),
                )
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to save property '{key}': {e}") from e

    def get_database_properties(self) -> DatabaseProperties:
        with self._lock:
            self._conn()
            return self._properties

    def reload_properties(self) -> DatabaseProperties:
        with self._lock:
            self._conn()
            self._properties.reload()
            return self._properties

    # --- Queries ---
    def _candidate_rows(self, vendor: str, product: str) -> list[tuple[str, VulnerableSoftware]]:
        with self._lock:
            try:
                rows = self._conn().execute(
                    """
                    SELECT cve_id, cpe, version_start_including, version_start_excluding,
                           version_end_including, version_end_excluding, vulnerable
                    FROM software WHERE vendor = ? AND product = ? ORDER BY cve_id, id
                    """,
                    (_normalize(vendor), _normalize(product)),
                ).fetchall()
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to query software for {vendor}:{product}: {e}") from e
        return [(row[0], self._software_from_row(row[1:])) for row in rows]

    @staticmethod
    def _software_from_row(row) -> VulnerableSoftware:
        cpe, start_incl, start_excl, end_incl, end_excl, vulnerable = row
        return VulnerableSoftware(
            Cpe.parse(cpe),
            version_start_including=start_incl,
            version_start_excluding=start_excl,
            version_end_including=end_incl,
            version_end_excluding=end_excl,
            vulnerable=bool(vulnerable),
        )

    def get_candidate_software(self, vendor: str, product: str) -> set[VulnerableSoftware]:
        """Every stored affected-software entry for the vendor/product, without version filtering."""
        return {software for _, software in self._candidate_rows(vendor, product)}

    def get_vulnerabilities(self, cpe: Cpe | str) -> list[Vulnerability]:
        """Vulnerabilities whose affected software matches the CPE, including its version."""
        if isinstance(cpe, str):
            cpe = Cpe.parse(cpe)
        key = cpe.to_cpe23()
        with self._lock:
            self._conn()
            if self.settings.cache_vulnerabilities and key in self._cache:
                logger.debug(f"Cache hit for {key}")
                return list(self._cache[key])

            vendor, product = cpe.vendor_product
            by_cve = defaultdict(list)
            for cve_id, software in self._candidate_rows(vendor, product):
                by_cve[cve_id].append(software)

            results = []
            for cve_id, entries in by_cve.items():
                match = get_matching_software(cpe, entries)
                if match is None or not match.vulnerable:
                    continue
                vuln = self.get_vulnerability(cve_id)
                if vuln is not None:
                    results.append(replace(vuln, matched_software=match))
            results.sort(key=lambda v: v.id)
            if self.settings.cache_vulnerabilities:
                self._cache[key] = results
            return list(results)

    def get_vulnerability(self, cve_id: str) -> Vulnerability | None:
        with self._lock:
            conn = self._conn()
            try:
                row = conn.execute(
                    "SELECT cve_id, description, cvss_score, cvss_vector, cvss_version, published, last_modified "
                    "FROM vulnerability WHERE cve_id = ?",
                    (cve_id,),
                ).fetchone()
                if row is None:
                    return None
                cwes = tuple(r[0] for r in conn.execute(
                    "SELECT cwe FROM cwe_entry WHERE cve_id = ? ORDER BY rowid", (cve_id,)))
                references = tuple(Reference(name, url, source) for name, url, source in conn.execute(
                    "SELECT name, url, source FROM reference WHERE cve_id = ? ORDER BY id", (cve_id,)))
                software = frozenset(self._software_from_row(r) for r in conn.execute(
                    "SELECT cpe, version_start_including, version_start_excluding, version_end_including, "
                    "version_end_excluding, vulnerable FROM software WHERE cve_id = ?", (cve_id,)))
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to load {cve_id}: {e}") from e
        cwe_names = tuple((cwe, name) for cwe in cwes if (name := get_cwe_name(cwe)))
        return Vulnerability(
            id=row[0], description=row[1], cvss_score=row[2], cvss_vector=row[3], cvss_version=row[4],
            published=row[5], last_modified=row[6], cwes=cwes, references=references,
            affected=software, cwe_names=cwe_names,
        )

    def get_vendor_product_list(self) -> set[tuple[str, str]]:
        with self._lock:
            try:
                return set(self._conn().execute("SELECT DISTINCT vendor, product FROM software").fetchall())
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to list vendor/product pairs: {e}") from e

    def data_exists(self) -> bool:
        with self._lock:
            try:
                return self._conn().execute("SELECT 1 FROM vulnerability LIMIT 1").fetchone() is not None
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to check for data: {e}") from e

    # --- Updates ---
    def update_vulnerability(self, vulnerability: Vulnerability, ecosystem: str | None = None) -> None:
        """Replaces the full record: delete by id, then insert. Rejected records are only deleted."""
        if is_rejected(vulnerability.description):
            logger.debug(f"{vulnerability.id} is rejected; removing it from the database")
            self.delete_vulnerability(vulnerability.id)
            return
        with self._lock:
            conn = self._conn()
            try:
                self._begin(conn)
                conn.execute("SAVEPOINT update_vulnerability")
                try:
                    self._delete_rows(conn, vulnerability.id)
                    self._insert_rows(conn, vulnerability, ecosystem)
                except Exception:
                    conn.execute("ROLLBACK TO update_vulnerability")
                    raise
                finally:
                    conn.execute("RELEASE update_vulnerability")
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to update {vulnerability.id}: {e}") from e
            finally:
                self._cache.clear()

    def delete_vulnerability(self, cve_id: str) -> None:
        with self._lock:
            conn = self._conn()
            try:
                self._begin(conn)
                conn.execute("SAVEPOINT delete_vulnerability")
                try:
                    self._delete_rows(conn, cve_id)
                except Exception:
                    conn.execute("ROLLBACK TO delete_vulnerability")
                    raise
                finally:
                    conn.execute("RELEASE delete_vulnerability")
            except sqlite3.Error as e:
                raise DatabaseError(f"Unable to delete {cve_id}: {e}") from e
            finally:
                self._cache.clear()

    @staticmethod
    def _delete_rows(conn: sqlite3.Connection, cve_id: str) -> None:
        for table in _CHILD_TABLES:
            conn.execute(f"DELETE FROM {table} WHERE cve_id = ?", (cve_id,))
        conn.execute("DELETE FROM vulnerability WHERE cve_id = ?", (cve_id,))

    @staticmethod
    def _insert_rows(conn: sqlite3.Connection, vuln: Vulnerability, ecosystem: str | None) -> None:
        conn.execute(
            "INSERT INTO vulnerability (cve_id, description, cvss_score, cvss_vector, cvss_version, "
            "published, last_modified, ecosystem) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (vuln.id, vuln.description, vuln.cvss_score, vuln.cvss_vector, vuln.cvss_version,
             vuln.published, vuln.last_modified, ecosystem),
        )
        conn.executemany(
            "INSERT OR IGNORE INTO cwe_entry (cve_id, cwe) VALUES (?, ?)",
            [(vuln.id, cwe) for cwe in vuln.cwes],
        )
        conn.executemany(
            "INSERT INTO reference (cve_id, name, url, source) VALUES (?, ?, ?, ?)",
            [(vuln.id, ref.name, ref.url, ref.source) for ref in vuln.references],
        )
        rows = []
        for software in sorted(vuln.affected, key=str):
            vendor, product = software.cpe.vendor_product
            rows.append((
                vuln.id, software.cpe.part, vendor, product, software.cpe.to_cpe23(),
                software.version_start_including, software.version_start_excluding,
                software.version_end_including, software.version_end_excluding,
                1 if software.vulnerable else 0,
            ))
        conn.executemany(
            "INSERT INTO software (cve_id, part, vendor, product, cpe, version_start_including, "
            "version_start_excluding, version_end_including, version_end_excluding, vulnerable) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )

    def get_ecosystem(self, cve_id: str) -> str | None:
        with self._lock:
            row = self._conn().execute("SELECT ecosystem FROM vulnerability WHERE cve_id = ?", (cve_id,)).fetchone()
        return row[0] if row else None

    def cleanup_database(self) -> int:
        """Removes software, reference and CWE rows that no longer belong to a vulnerability."""
        with self._lock:
            conn = self._conn()
            removed = 0
            try:
                self._begin(conn)
                for table in _CHILD_TABLES:
                    cursor = conn.execute(
                        f"DELETE FROM {table} WHERE cve_id NOT IN (SELECT cve_id FROM vulnerability)")
                    removed += cursor.rowcount
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                raise DatabaseError(f"Database cleanup failed: {e}") from e
            self._cache.clear()
        if removed:
            logger.info(f"Removed {removed} orphaned rows from the vulnerability database")
        return removed
