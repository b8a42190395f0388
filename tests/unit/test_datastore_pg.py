import importlib
from datetime import datetime, timezone


def _reload_pg():
    # conftest swaps the query functions for in-memory ones; reload restores the SQL versions
    import championship.datastore_pg as pg
    return importlib.reload(pg)


class _Cursor:
    def __init__(self, conn):
        self.conn = conn
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.conn.statements.append((" ".join(sql.split()), params))
        if self.conn.fail_with is not None:
            raise self.conn.fail_with
        for needle, rows in self.conn.responses:
            if needle in sql:
                self._rows = rows
                return
        self._rows = []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class _Conn:
    autocommit = False

    def __init__(self, responses=(), fail_with=None, status=0):
        self.responses = list(responses)
        self.fail_with = fail_with
        self.status = status
        self.closed = 0
        self.statements = []
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return _Cursor(self)

    def rollback(self):
        self.rollbacks += 1

    def commit(self):
        pass

    def close(self):
        self.closed = 1


class _Pool:
    def __init__(self, conns):
        self.conns = list(conns)
        self.gets = 0
        self.puts = []

    def getconn(self):
        self.gets += 1
        return self.conns.pop(0)

    def putconn(self, conn, close=False):
        self.puts.append((conn, close))
        if close:
            conn.close()


def test_pool_checkout_replaces_stale_connection(monkeypatch):
    pg = _reload_pg()
    from psycopg2 import OperationalError

    stale = _Conn(fail_with=OperationalError("SSL connection has been closed unexpectedly"))
    healthy = _Conn()
    pool = _Pool([stale, healthy])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn() as conn:
        assert conn is healthy

    assert pool.gets == 2
    assert (stale, True) in pool.puts
    assert stale.closed == 1
    # The healthy connection goes back to the pool open
    assert pool.puts[-1] == (healthy, False)


def test_dirty_connection_rolled_back_before_release(monkeypatch):
    pg = _reload_pg()
    conn = _Conn(status=2)
    pool = _Pool([conn])
    monkeypatch.setattr(pg, "_POOL", pool)

    with pg._get_conn():
        pass

    # One rollback from the liveness check, one on release
    assert conn.rollbacks == 2
    assert pool.puts == [(conn, False)]


def test_init_pool_and_direct_connect_share_connection_options(monkeypatch):
    pg = _reload_pg()
    monkeypatch.setenv("DB_CONNECT_TIMEOUT", "7")
    monkeypatch.setenv("DB_KEEPALIVES_IDLE", "30")
    monkeypatch.setenv("DB_KEEPALIVES_COUNT", "3")

    captured = {}

    class FakePool:
        def __init__(self, minconn, maxconn, dsn=None, **kwargs):
            captured["pool"] = (minconn, maxconn, dsn, kwargs)

    def fake_connect(dsn=None, **kwargs):
        captured["direct"] = (dsn, kwargs)
        return _Conn()

    monkeypatch.setattr(pg, "_POOL", None)
    monkeypatch.setattr(pg.psycopg2, "connect", fake_connect)
    with pg._get_conn():
        pass

    monkeypatch.setattr(pg.pg_pool, "ThreadedConnectionPool", FakePool)
    pg.init_pool(minconn=2, maxconn=5)

    minconn, maxconn, dsn, pool_kwargs = captured["pool"]
    assert (minconn, maxconn) == (2, 5)
    assert dsn.startswith("postgresql://")
    expected = {"connect_timeout": 7, "keepalives": 1, "keepalives_idle": 30, "keepalives_count": 3}
    assert pool_kwargs == expected
    assert captured["direct"][1] == expected


def test_keepalives_can_be_disabled(monkeypatch):
    pg = _reload_pg()
    monkeypatch.setenv("DB_KEEPALIVES", "false")
    monkeypatch.setenv("DB_CONNECT_TIMEOUT", "not-a-number")
    kwargs = pg._connect_kwargs()
    assert kwargs["keepalives"] == 0
    assert kwargs["connect_timeout"] == 10


def test_load_season_builds_tree_in_one_read_only_transaction(monkeypatch):
    pg = _reload_pg()
    done = datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)
    conn = _Conn(
        responses=[
            ("FROM seasons", [{"season_id": 5, "name": "Cup", "status": "active"}]),
            ("FROM teams", [{"team_id": 1, "name": "Apex"}]),
            ("FROM divisions", [{"division_id": 3, "name": "Gold"}]),
            ("FROM season_settings", [{"config": '{"version": 3, "drop_rounds": {"enabled": true, "count": 1}}'}]),
            ("FROM season_drivers", [{"driver_id": 7, "name": "Alice", "team_id": 1}]),
            (
                "FROM rounds",
                [
                    {"round_id": 11, "round_number": 1, "round_name": "Opening", "status": "completed",
                     "completed_at": done, "race_id": 100, "race_number": 1, "race_name": "Sprint",
                     "is_qualifier": False, "points_system": {"points_by_position": [{"position": 1, "points": 8}]}},
                    {"round_id": 11, "round_number": 1, "round_name": "Opening", "status": "completed",
                     "completed_at": done, "race_id": 101, "race_number": 2, "race_name": "Feature",
                     "is_qualifier": False, "points_system": None},
                    {"round_id": 12, "round_number": 2, "round_name": None, "status": "scheduled",
                     "completed_at": None, "race_id": None, "race_number": None, "race_name": None,
                     "is_qualifier": None, "points_system": None,
                     "round_points": '{"points_by_position": [{"position": 1, "points": 5}]}'},
                ],
            ),
            (
                "FROM race_results",
                [
                    {"race_id": 100, "driver_id": 7, "position": 1, "has_fastest_lap": False, "has_pole": False,
                     "dnf": False, "dns": False, "penalty_ms": 0, "status": "confirmed"},
                    {"race_id": 101, "driver_id": 7, "position": 2, "has_fastest_lap": True, "has_pole": False,
                     "dnf": False, "dns": False, "penalty_ms": 0, "status": "confirmed"},
                ],
            ),
        ]
    )
    monkeypatch.setattr(pg, "_POOL", _Pool([conn]))

    season = pg.load_season(5)

    assert conn.statements[1][0].startswith("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
    assert season["settings"]["version"] == 3
    assert season["teams"] == [{"team_id": 1, "name": "Apex"}]
    assert [r["round_number"] for r in season["rounds"]] == [1, 2]
    first, second = season["rounds"]
    assert [race["name"] for race in first["races"]] == ["Sprint", "Feature"]
    assert first["races"][0]["points_system"]["points_by_position"][0]["points"] == 8
    assert first["races"][1]["results"][0]["has_fastest_lap"] is True
    assert second["races"] == []
    assert first["round_points"] is None
    assert second["round_points"]["points_by_position"][0]["points"] == 5
    assert season["divisions"] == [{"division_id": 3, "name": "Gold"}]
    # Results for all races come from a single query
    assert sum(1 for sql, _ in conn.statements if "FROM race_results" in sql) == 1


def test_load_season_missing_returns_none(monkeypatch):
    pg = _reload_pg()
    conn = _Conn()
    monkeypatch.setattr(pg, "_POOL", _Pool([conn]))
    assert pg.load_season(404) is None
