"""
Flask Routes for Agent Tracker

Includes:
- Health check endpoint
- Search and newsletter-import triggers (run in the background)
- Discovery listing with filter/sort/pagination and per-state counts
- Discovery detail, feedback, hide toggle and bulk actions
- Project summary
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone

from flask import Blueprint, abort, current_app, jsonify, request
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

from agent_tracker.config import PipelineConfig
from agent_tracker.database import SessionLocal
from agent_tracker.models import Project
from agent_tracker.services import lifecycle
from agent_tracker.services.merge import StoreUnavailable
from agent_tracker.services.project_summary import generate_project_summary

logger = logging.getLogger(__name__)

# Create blueprint
main = Blueprint('main', __name__)

DISCOVERIES_PER_PAGE = lifecycle.DEFAULT_PER_PAGE


# =============================================================================
# Background jobs
# =============================================================================

def _run_search(project_id: str):
    from agent_tracker.services.orchestrator import build_orchestrator

    config = PipelineConfig.from_env()
    try:
        orchestrator = build_orchestrator(config, SessionLocal)
        result = asyncio.run(orchestrator.run_with_timeout(project_id))
        logger.info(f"Background search for {project_id} finished: "
                    f"{result.stats.get('inserted', 0)} new, skipped={result.skipped}, timed_out={result.timed_out}")
    except Exception as e:
        logger.error(f"Background search for {project_id} failed: {e}")


def _run_import(project_id: str):
    from agent_tracker.services.newsletter_import import import_newsletters

    config = PipelineConfig.from_env()
    try:
        stats = asyncio.run(import_newsletters(project_id, config, SessionLocal))
        logger.info(f"Background newsletter import for {project_id}: {stats.get('inserted', 0)} new")
    except Exception as e:
        logger.error(f"Background newsletter import for {project_id} failed: {e}")


def _start_thread(target, project_id: str):
    thread = threading.Thread(target=target, args=(project_id,), daemon=True)
    thread.start()


def _require_project(session, project_id: str) -> Project:
    project_uuid = lifecycle.parse_uuid(project_id)
    if project_uuid is None:
        abort(404, description="Invalid project ID")
    project = session.get(Project, project_uuid)
    if project is None:
        abort(404, description="Project not found")
    return project


def _require_discovery(session, discovery_id: str, mark_as_viewed: bool = False):
    discovery = lifecycle.get_discovery(session, discovery_id, mark_as_viewed=mark_as_viewed)
    if discovery is None:
        abort(404, description="Discovery not found")
    return discovery


@main.errorhandler(HTTPException)
def _json_http_error(error: HTTPException):
    return jsonify({'error': error.description}), error.code


@main.errorhandler(StoreUnavailable)
def _store_unavailable(error: StoreUnavailable):
    return jsonify({'error': 'Discovery store unavailable'}), 503


def _handle_unexpected(session, e: Exception, action: str):
    session.rollback()
    if isinstance(e, OperationalError):
        logger.error(f"Database unavailable during {action}: {e}")
        return jsonify({'error': 'Discovery store unavailable'}), 503
    logger.error(f"Error during {action}: {e}")
    abort(500)


# =============================================================================
# Routes
# =============================================================================

@main.route('/health')
def health_check():
    """Health check endpoint."""
    return {'status': 'healthy', 'timestamp': datetime.now(timezone.utc).isoformat()}


@main.route('/api/projects/<project_id>/search', methods=['POST'])
def trigger_search(project_id: str):
    """Start a discovery search in the background."""
    session = SessionLocal()
    try:
        project = _require_project(session, project_id)
        runner = current_app.config.get('SEARCH_RUNNER') or (lambda pid: _start_thread(_run_search, pid))
        runner(str(project.id))
        logger.info(f"Search triggered for project {project.id}")
        return jsonify({'status': 'accepted', 'message': 'Search running', 'project_id': str(project.id)}), 202
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'trigger search')
    finally:
        session.close()


@main.route('/api/projects/<project_id>/email-import', methods=['POST'])
def trigger_email_import(project_id: str):
    """Start a newsletter import in the background."""
    session = SessionLocal()
    try:
        project = _require_project(session, project_id)
        runner = current_app.config.get('IMPORT_RUNNER') or (lambda pid: _start_thread(_run_import, pid))
        runner(str(project.id))
        return jsonify({'status': 'accepted', 'message': 'Newsletter import running'}), 202
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'trigger email import')
    finally:
        session.close()


@main.route('/api/projects/<project_id>/discoveries')
def get_discoveries(project_id: str):
    """
    List discoveries for a project.

    Query params: filter (all|new|viewed|hidden|useful|not_useful),
    sort (relevance|date|feedback), page, per_page.
    """
    session = SessionLocal()
    try:
        project = _require_project(session, project_id)

        filter_name = request.args.get('filter', 'all')
        sort = request.args.get('sort', 'relevance')
        try:
            page = int(request.args.get('page', 1))
            per_page = int(request.args.get('per_page', DISCOVERIES_PER_PAGE))
        except ValueError:
            abort(400, description="page and per_page must be integers")

        discoveries, total, counts = lifecycle.list_discoveries(
            session, project.id, filter_name=filter_name, sort=sort, page=page, per_page=per_page
        )
        per_page = max(1, min(per_page, lifecycle.MAX_PER_PAGE))
        total_pages = (total + per_page - 1) // per_page

        return jsonify({
            'discoveries': [d.to_dict() for d in discoveries],
            'counts': counts,
            'total': total,
            'page': max(1, page),
            'total_pages': total_pages,
            'filter': filter_name if filter_name in lifecycle.FILTERS else 'all',
            'sort': sort if sort in lifecycle.SORTS else 'relevance',
        })
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'list discoveries')
    finally:
        session.close()


@main.route('/api/discoveries/<discovery_id>')
def get_discovery(discovery_id: str):
    """Return one discovery and mark it viewed."""
    session = SessionLocal()
    try:
        discovery = _require_discovery(session, discovery_id, mark_as_viewed=True)
        session.commit()
        return jsonify(discovery.to_dict())
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'get discovery')
    finally:
        session.close()


@main.route('/api/discoveries/<discovery_id>/feedback', methods=['PUT', 'POST'])
def update_feedback(discovery_id: str):
    """
    Record feedback.

    Body: {"useful": true|false|null, "notes": "..."}; useful=null clears
    the verdict.
    """
    session = SessionLocal()
    try:
        discovery = _require_discovery(session, discovery_id)
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            abort(400, description="JSON body required")

        useful = data.get('useful')
        if useful is not None and not isinstance(useful, bool):
            abort(400, description="useful must be true, false or null")
        notes = data.get('notes')
        if notes is not None and not isinstance(notes, str):
            abort(400, description="notes must be a string")

        lifecycle.update_feedback(
            session, discovery,
            useful=useful,
            notes=notes,
            clear='useful' in data and useful is None,
        )
        session.commit()
        logger.info(f"Feedback recorded for discovery {discovery.id}: {discovery.feedback_state}")
        return jsonify(discovery.to_dict())
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'update feedback')
    finally:
        session.close()


@main.route('/api/discoveries/<discovery_id>/hide', methods=['POST'])
def toggle_hidden(discovery_id: str):
    """Toggle the hidden flag."""
    session = SessionLocal()
    try:
        discovery = _require_discovery(session, discovery_id)
        lifecycle.toggle_hidden(discovery)
        session.commit()
        return jsonify(discovery.to_dict())
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'toggle hidden')
    finally:
        session.close()


@main.route('/api/projects/<project_id>/discoveries/bulk', methods=['POST'])
def bulk_action(project_id: str):
    """
    Apply one action to many discoveries.

    Body: {"action": "mark_viewed|mark_unviewed|hide|unhide",
           "ids": [...]} or {"action": ..., "filter": "new"}
    """
    session = SessionLocal()
    try:
        project = _require_project(session, project_id)
        data = request.get_json(silent=True) or {}
        action = data.get('action', '')
        ids = data.get('ids')
        filter_name = data.get('filter')

        if action not in lifecycle.BULK_ACTIONS:
            return jsonify({'error': 'Invalid action'}), 400
        if ids is None and not filter_name:
            return jsonify({'error': 'No discoveries selected'}), 400
        if ids is not None and not isinstance(ids, list):
            return jsonify({'error': 'ids must be a list'}), 400
        if ids is None and filter_name not in lifecycle.FILTERS:
            return jsonify({'error': 'Invalid filter'}), 400

        result = lifecycle.bulk_update(session, project.id, action, ids=ids, filter_name=filter_name)
        return jsonify({
            'success': result.failed == 0,
            'succeeded': result.succeeded,
            'failed': result.failed,
            'errors': result.errors,
        })
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'bulk action')
    finally:
        session.close()


@main.route('/api/projects/<project_id>/summary')
def project_summary(project_id: str):
    """Top unpresented discoveries; marks them presented."""
    session = SessionLocal()
    try:
        project = _require_project(session, project_id)
        return jsonify(generate_project_summary(session, project.id))
    except HTTPException:
        raise
    except Exception as e:
        return _handle_unexpected(session, e, 'project summary')
    finally:
        session.close()
