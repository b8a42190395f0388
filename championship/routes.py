from flask import Blueprint, current_app, request
from datetime import datetime, timezone
import os
import time

from .config import merge_with_defaults, parse_scoring_config
from .errors import ConfigurationError, SeasonNotFound, StandingsInvariantError
from .service import standings_report
from .datastore import (
    list_seasons as ds_list_seasons,
    get_scoring_settings as ds_get_scoring_settings,
    set_scoring_settings as ds_set_scoring_settings,
    season_exists as ds_season_exists,
)


bp = Blueprint('main', __name__)

# Simple in-process cache for standings tables, keyed by (season, as_of, kind)
_STANDINGS_CACHE: dict[tuple[int, str, str], tuple[float, dict]] = {}
_STANDINGS_TTL = int(os.environ.get('CACHE_TTL_STANDINGS', '180'))  # seconds


def _cache_get_standings(season_id: int, as_of: str, kind: str) -> dict | None:
    key = (int(season_id), as_of, kind)
    entry = _STANDINGS_CACHE.get(key)
    if not entry:
        return None
    exp, value = entry
    if exp < time.time():
        _STANDINGS_CACHE.pop(key, None)
        return None
    return value


def _cache_set_standings(season_id: int, as_of: str, kind: str, report: dict) -> None:
    if _STANDINGS_TTL <= 0:
        return
    _STANDINGS_CACHE[(int(season_id), as_of, kind)] = (time.time() + _STANDINGS_TTL, report)


def _cache_clear_season(season_id: int) -> None:
    for key in [k for k in _STANDINGS_CACHE if k[0] == int(season_id)]:
        _STANDINGS_CACHE.pop(key, None)


def _cache_clear_all() -> None:
    _STANDINGS_CACHE.clear()


def _parse_as_of(value: str | None) -> datetime | None:
    """Parse an ISO-8601 ``as_of`` query value; a trailing ``Z`` means UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.'
        }
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
            return {
                'connected': True,
                'status': 'ok',
                'user': user,
                'database': db,
                'server_version': (ver or '').split('\n')[0],
            }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
        }


@bp.route('/api/seasons')
def seasons():
    return {'seasons': ds_list_seasons()}


def _standings_response(season_id: int, kind: str):
    try:
        as_of = _parse_as_of(request.args.get('as_of'))
    except ValueError:
        return {'error': 'as_of must be an ISO-8601 timestamp', 'field': 'as_of'}, 400
    as_of_key = as_of.isoformat() if as_of else ''

    cached = _cache_get_standings(season_id, as_of_key, kind)
    if cached is not None:
        return cached
    try:
        report = standings_report(season_id, as_of=as_of, kind=kind)
    except SeasonNotFound as e:
        return {'error': str(e)}, 404
    except ConfigurationError as e:
        # Stored settings that no longer validate; surface the field for the admin
        current_app.logger.error("Season %s has invalid scoring settings: %s", season_id, e)
        return {'error': e.message, 'field': e.field}, 400
    except StandingsInvariantError as e:
        current_app.logger.error("Season %s standings could not be computed: %s", season_id, e)
        return {'error': str(e)}, 500
    _cache_set_standings(season_id, as_of_key, kind, report)
    return report


@bp.route('/api/seasons/<int:season_id>/standings')
def standings(season_id):
    """Drivers' championship table, optionally as of a point in time."""
    return _standings_response(season_id, 'drivers')


@bp.route('/api/seasons/<int:season_id>/standings/teams')
def team_standings(season_id):
    return _standings_response(season_id, 'teams')


@bp.route('/api/seasons/<int:season_id>/standings/divisions')
def division_standings(season_id):
    """One drivers' table per division; empty when the season has no divisions."""
    return _standings_response(season_id, 'divisions')


@bp.route('/api/seasons/<int:season_id>/settings/scoring')
def scoring_settings(season_id):
    if not ds_season_exists(season_id):
        return {'error': f'Season {season_id} not found'}, 404
    stored = ds_get_scoring_settings(season_id) or {}
    version = int(stored.get('version', 0) or 0)
    if request.args.get('only') == 'version':
        return {'version': version}
    data = merge_with_defaults(stored)
    data['version'] = version
    data['updated_at'] = stored.get('updated_at')
    return data


@bp.route('/api/seasons/<int:season_id>/settings/scoring', methods=['POST'])
def save_scoring_settings(season_id):
    """Validate and persist a new scoring settings version for a season."""
    if not ds_season_exists(season_id):
        return {'error': f'Season {season_id} not found'}, 404
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {'error': 'Request body must be a JSON object', 'field': 'settings'}, 400
    payload.pop('version', None)
    payload.pop('updated_at', None)

    # Reject before anything is stored; a bad save must never reach standings
    try:
        parse_scoring_config(payload)
    except ConfigurationError as e:
        return {'error': e.message, 'field': e.field}, 400

    existing = ds_get_scoring_settings(season_id) or {"version": 0}
    payload["version"] = int(existing.get("version", 0) or 0) + 1
    payload["updated_at"] = datetime.now(timezone.utc).isoformat()

    ds_set_scoring_settings(season_id, payload)

    # Bust cached tables for this season after settings change
    _cache_clear_season(season_id)
    current_app.logger.info("Season %s scoring settings saved as version %s", season_id, payload["version"])

    return {"status": "ok", "version": payload["version"]}
