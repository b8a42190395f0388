import os
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor
from psycopg2 import errors as pg_errors
from contextlib import contextmanager


_POOL: Optional[pg_pool.AbstractConnectionPool] = None


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS seasons (
        id SERIAL PRIMARY KEY,
        name VARCHAR(200) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'active',
        race_divisions_enabled BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS teams (
        id SERIAL PRIMARY KEY,
        season_id INTEGER NOT NULL REFERENCES seasons(id) ON DELETE CASCADE,
        name VARCHAR(200) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS divisions (
        id SERIAL PRIMARY KEY,
        season_id INTEGER NOT NULL REFERENCES seasons(id) ON DELETE CASCADE,
        name VARCHAR(200) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS season_drivers (
        id SERIAL PRIMARY KEY,
        season_id INTEGER NOT NULL REFERENCES seasons(id) ON DELETE CASCADE,
        driver_id INTEGER NOT NULL,
        name VARCHAR(200),
        team_id INTEGER REFERENCES teams(id) ON DELETE SET NULL,
        division_id INTEGER REFERENCES divisions(id) ON DELETE SET NULL,
        UNIQUE(season_id, driver_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rounds (
        id SERIAL PRIMARY KEY,
        season_id INTEGER NOT NULL REFERENCES seasons(id) ON DELETE CASCADE,
        round_number INTEGER NOT NULL,
        name VARCHAR(200),
        status VARCHAR(20) NOT NULL DEFAULT 'scheduled'
            CHECK (status IN ('scheduled', 'in_progress', 'completed')),
        completed_at TIMESTAMPTZ,
        round_points JSONB,
        UNIQUE(season_id, round_number)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS races (
        id SERIAL PRIMARY KEY,
        round_id INTEGER NOT NULL REFERENCES rounds(id) ON DELETE CASCADE,
        race_number INTEGER,
        name VARCHAR(200),
        is_qualifier BOOLEAN NOT NULL DEFAULT FALSE,
        points_system JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS race_results (
        id SERIAL PRIMARY KEY,
        race_id INTEGER NOT NULL REFERENCES races(id) ON DELETE CASCADE,
        driver_id INTEGER NOT NULL,
        position INTEGER,
        has_fastest_lap BOOLEAN NOT NULL DEFAULT FALSE,
        has_pole BOOLEAN NOT NULL DEFAULT FALSE,
        dnf BOOLEAN NOT NULL DEFAULT FALSE,
        dns BOOLEAN NOT NULL DEFAULT FALSE,
        penalty_ms INTEGER NOT NULL DEFAULT 0,
        status VARCHAR(20) NOT NULL DEFAULT 'confirmed',
        division_id INTEGER REFERENCES divisions(id) ON DELETE SET NULL,
        UNIQUE(race_id, driver_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS season_settings (
        id SERIAL PRIMARY KEY,
        season_id INTEGER NOT NULL REFERENCES seasons(id) ON DELETE CASCADE,
        version INTEGER,
        updated_at TIMESTAMP,
        config JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_rounds_season ON rounds(season_id, round_number)",
    "CREATE INDEX IF NOT EXISTS idx_races_round ON races(round_id)",
    "CREATE INDEX IF NOT EXISTS idx_race_results_race ON race_results(race_id)",
    "CREATE INDEX IF NOT EXISTS idx_season_settings_season ON season_settings(season_id, id DESC)",
]


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {"connect_timeout": _env_int("DB_CONNECT_TIMEOUT", 10)}
    ka_env = os.environ.get("DB_KEEPALIVES")
    kwargs["keepalives"] = 0 if ka_env is not None and ka_env.lower() in ("0", "false") else 1
    for env_name, key in (
        ("DB_KEEPALIVES_IDLE", "keepalives_idle"),
        ("DB_KEEPALIVES_INTERVAL", "keepalives_interval"),
        ("DB_KEEPALIVES_COUNT", "keepalives_count"),
    ):
        value = _env_int(env_name)
        if value is not None:
            kwargs[key] = value
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


def _is_healthy(conn) -> bool:
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
        if not getattr(conn, "autocommit", False):
            conn.rollback()
        return True
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False


def _release(conn) -> None:
    # status 1 = active, 2 = intrans, 3 = inerror: never hand back a dirty connection
    if getattr(conn, "closed", 0) == 0 and not getattr(conn, "autocommit", False):
        if getattr(conn, "status", 0) in (1, 2, 3):
            try:
                conn.rollback()
            except psycopg2.Error:
                pass
    _POOL.putconn(conn)


@contextmanager
def _get_conn():
    """Yield a database connection from the pool if available, else direct.

    A pooled connection that fails a ``SELECT 1`` liveness check is discarded
    and one replacement is tried before giving up.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is None:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return

    conn = None
    for _attempt in range(2):
        candidate = _POOL.getconn()
        if _is_healthy(candidate):
            conn = candidate
            break
        _POOL.putconn(candidate, close=True)
    if conn is None:
        raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    finally:
        _release(conn)


def create_schema() -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        for statement in SCHEMA_STATEMENTS:
            cur.execute(statement)
        conn.commit()


def _json_value(value: Any) -> Any:
    # JSONB arrives decoded from psycopg2; text columns from older rows do not.
    if isinstance(value, str):
        return json.loads(value)
    return value


def list_seasons() -> List[Dict[str, Any]]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(
            "SELECT id AS season_id, name, status, race_divisions_enabled AS has_divisions FROM seasons ORDER BY id"
        )
        return [dict(row) for row in cur.fetchall() or []]


def load_season(season_id: int) -> Optional[Dict[str, Any]]:
    """Return one season with its settings, roster, teams, rounds, races and results.

    Everything is read inside a single REPEATABLE READ, READ ONLY transaction
    so a result correction committed mid-read is either fully visible or not
    at all. Returns ``None`` when the season does not exist.
    """
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
        cur.execute(
            "SELECT id AS season_id, name, status, race_divisions_enabled FROM seasons WHERE id = %s",
            (int(season_id),),
        )
        season_row = cur.fetchone()
        if season_row is None:
            conn.rollback()
            return None
        season: Dict[str, Any] = dict(season_row)

        cur.execute("SELECT id AS team_id, name FROM teams WHERE season_id = %s ORDER BY id", (int(season_id),))
        season["teams"] = [dict(r) for r in cur.fetchall() or []]

        cur.execute("SELECT id AS division_id, name FROM divisions WHERE season_id = %s ORDER BY id", (int(season_id),))
        season["divisions"] = [dict(r) for r in cur.fetchall() or []]

        cur.execute(
            "SELECT config FROM season_settings WHERE season_id = %s ORDER BY id DESC LIMIT 1",
            (int(season_id),),
        )
        settings_row = cur.fetchone()
        season["settings"] = _json_value(settings_row["config"]) if settings_row and settings_row.get("config") else {}

        cur.execute(
            """
            SELECT driver_id, name, team_id, division_id
            FROM season_drivers
            WHERE season_id = %s
            ORDER BY driver_id
            """,
            (int(season_id),),
        )
        season["drivers"] = [dict(r) for r in cur.fetchall() or []]

        cur.execute(
            """
            SELECT r.id AS round_id, r.round_number, r.name AS round_name, r.status, r.completed_at, r.round_points,
                   ra.id AS race_id, ra.race_number, ra.name AS race_name, ra.is_qualifier, ra.points_system
            FROM rounds r
            LEFT JOIN races ra ON ra.round_id = r.id
            WHERE r.season_id = %s
            ORDER BY r.round_number, ra.is_qualifier DESC, ra.race_number NULLS LAST, ra.id
            """,
            (int(season_id),),
        )
        rows = cur.fetchall() or []

        race_ids = [row["race_id"] for row in rows if row.get("race_id") is not None]
        results_by_race: Dict[int, List[Dict[str, Any]]] = {}
        if race_ids:
            cur.execute(
                """
                SELECT race_id, driver_id, position, has_fastest_lap, has_pole, dnf, dns, penalty_ms, status, division_id
                FROM race_results
                WHERE race_id = ANY(%s)
                ORDER BY race_id, position NULLS LAST, driver_id
                """,
                (race_ids,),
            )
            for res in cur.fetchall() or []:
                results_by_race.setdefault(res["race_id"], []).append(dict(res))
        conn.rollback()

    rounds_by_id: Dict[int, Dict[str, Any]] = {}
    season["rounds"] = []
    for row in rows:
        rnd = rounds_by_id.get(row["round_id"])
        if rnd is None:
            rnd = {
                "round_number": row["round_number"],
                "name": row.get("round_name"),
                "status": row["status"],
                "completed_at": row.get("completed_at"),
                "round_points": _json_value(row.get("round_points")),
                "races": [],
            }
            rounds_by_id[row["round_id"]] = rnd
            season["rounds"].append(rnd)
        if row.get("race_id") is None:
            continue
        rnd["races"].append(
            {
                "race_id": row["race_id"],
                "race_number": row.get("race_number"),
                "name": row.get("race_name"),
                "is_qualifier": bool(row.get("is_qualifier")),
                "points_system": _json_value(row.get("points_system")),
                "results": results_by_race.get(row["race_id"], []),
            }
        )
    return season


def get_settings(season_id: int) -> Dict[str, Any]:
    """Return the latest stored scoring settings for a season, or ``{}``."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute(
                "SELECT config FROM season_settings WHERE season_id = %s ORDER BY id DESC LIMIT 1",
                (int(season_id),),
            )
        except pg_errors.UndefinedTable:
            return {}
        row = cur.fetchone()
        if row and row.get("config"):
            return _json_value(row["config"])
        return {}


def set_settings(season_id: int, settings: Dict[str, Any]) -> Dict[str, Any]:
    """Store a new settings version; earlier versions are kept for history."""
    updated_at = settings.get("updated_at") or datetime.now(timezone.utc).isoformat()
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO season_settings (season_id, version, updated_at, config)
            VALUES (%s, %s, %s, %s)
            """,
            (int(season_id), settings.get("version"), updated_at, json.dumps(settings)),
        )
        conn.commit()
    return settings


def insert_season(season: Dict[str, Any]) -> int:
    """Insert a season tree (as returned by :func:`load_season`) and return its id.

    Driver ids are kept as given; team and division ids are remapped to the
    generated primary keys.
    """
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            "INSERT INTO seasons (name, status, race_divisions_enabled) VALUES (%s, %s, %s) RETURNING id",
            (
                season.get("name") or "",
                season.get("status") or "active",
                bool(season.get("race_divisions_enabled")),
            ),
        )
        season_id = cur.fetchone()[0]

        team_ids: Dict[Any, int] = {}
        for team in season.get("teams", []) or []:
            cur.execute(
                "INSERT INTO teams (season_id, name) VALUES (%s, %s) RETURNING id",
                (season_id, team.get("name") or ""),
            )
            team_ids[team.get("team_id")] = cur.fetchone()[0]

        division_ids: Dict[Any, int] = {}
        for division in season.get("divisions", []) or []:
            cur.execute(
                "INSERT INTO divisions (season_id, name) VALUES (%s, %s) RETURNING id",
                (season_id, division.get("name") or ""),
            )
            division_ids[division.get("division_id")] = cur.fetchone()[0]

        for driver in season.get("drivers", []) or []:
            cur.execute(
                """
                INSERT INTO season_drivers (season_id, driver_id, name, team_id, division_id)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (
                    season_id,
                    driver["driver_id"],
                    driver.get("name"),
                    team_ids.get(driver.get("team_id")),
                    division_ids.get(driver.get("division_id")),
                ),
            )

        for rnd in season.get("rounds", []) or []:
            round_points = rnd.get("round_points")
            cur.execute(
                """
                INSERT INTO rounds (season_id, round_number, name, status, completed_at, round_points)
                VALUES (%s, %s, %s, %s, %s, %s) RETURNING id
                """,
                (
                    season_id,
                    rnd["round_number"],
                    rnd.get("name"),
                    rnd.get("status") or "scheduled",
                    rnd.get("completed_at"),
                    json.dumps(round_points) if round_points is not None else None,
                ),
            )
            round_id = cur.fetchone()[0]
            for race in rnd.get("races", []) or []:
                points_system = race.get("points_system")
                cur.execute(
                    """
                    INSERT INTO races (round_id, race_number, name, is_qualifier, points_system)
                    VALUES (%s, %s, %s, %s, %s) RETURNING id
                    """,
                    (
                        round_id,
                        race.get("race_number"),
                        race.get("name"),
                        bool(race.get("is_qualifier")),
                        json.dumps(points_system) if points_system is not None else None,
                    ),
                )
                race_id = cur.fetchone()[0]
                for res in race.get("results", []) or []:
                    cur.execute(
                        """
                        INSERT INTO race_results
                            (race_id, driver_id, position, has_fastest_lap, has_pole, dnf, dns, penalty_ms, status, division_id)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            race_id,
                            res["driver_id"],
                            res.get("position"),
                            bool(res.get("has_fastest_lap")),
                            bool(res.get("has_pole")),
                            bool(res.get("dnf")),
                            bool(res.get("dns")),
                            int(res.get("penalty_ms") or 0),
                            res.get("status") or "confirmed",
                            division_ids.get(res.get("division_id")),
                        ),
                    )

        settings = season.get("settings")
        if settings:
            cur.execute(
                "INSERT INTO season_settings (season_id, version, updated_at, config) VALUES (%s, %s, %s, %s)",
                (
                    season_id,
                    settings.get("version", 1),
                    settings.get("updated_at") or datetime.now(timezone.utc).isoformat(),
                    json.dumps(settings),
                ),
            )
        conn.commit()
    return season_id
