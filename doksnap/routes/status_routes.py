"""
Status routes - read-only view of sources, job history and stored backups.

Every endpoint works on snapshots taken from the job manager; nothing here
holds the job manager's lock while serializing.
"""

import re
import logging
from datetime import datetime, timezone

from flask import Blueprint, jsonify, request, current_app

from doksnap.auth import api_key_required
from doksnap.backup.executor import MAX_JOB_HISTORY
from doksnap.backup.storage import UploadError
from doksnap.scheduler import get_next_run_time


logger = logging.getLogger(__name__)

bp = Blueprint('status', __name__)

NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


def _state():
    return current_app.extensions['doksnap']


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sanitize_source_name(name):
    """Return name if it only holds letters, digits, dash and underscore."""
    if name and NAME_PATTERN.match(name):
        return name
    return None


def _last_backup_info(history):
    successful = [r for r in history if r.status == 'success' and r.metadata]
    if not successful:
        return None

    last = max(successful, key=lambda r: r.completed_at)
    return {
        'timestamp': last.completed_at.isoformat(),
        'size_mb': last.metadata.size_mb,
        'duration_seconds': last.metadata.duration_seconds,
    }


def _average_duration(history) -> float:
    durations = [
        r.metadata.duration_seconds for r in history
        if r.status == 'success' and r.metadata
    ]
    if not durations:
        return 0
    return round(sum(durations) / len(durations), 2)


@bp.route('/status', methods=['GET'])
@api_key_required
def get_status():
    """
    Get the current state of every configured source.

    Returns:
        JSON with one entry per source:
        - running: Whether a backup is in flight
        - last_backup: Most recent successful backup (no object key)
        - schedule / next_run: Cron expression and next fire time
    """
    state = _state()
    running = state.job_manager.running_jobs()
    history = state.job_manager.job_history(limit=MAX_JOB_HISTORY)

    sources = []
    for source in state.config.sources:
        marker = running.get(source.name)
        source_history = [r for r in history if r.source_name == source.name]

        sources.append({
            'source_name': source.name,
            'running': marker is not None and marker.is_running,
            'last_backup': _last_backup_info(source_history),
            'schedule': source.schedule,
            'next_run': get_next_run_time(source.name),
        })

    return jsonify({'sources': sources, 'timestamp': _now()})


@bp.route('/metrics', methods=['GET'])
@api_key_required
def get_metrics():
    """
    Get per-source backup metrics.

    Returns:
        JSON with stored backup counts and sizes, success/failure counts
        from the job history, average duration and the last backup time
    """
    state = _state()
    running = state.job_manager.running_jobs()
    history = state.job_manager.job_history(limit=MAX_JOB_HISTORY)

    metrics = []
    for source in state.config.sources:
        try:
            backups = state.uploader.list_backups(source.name, include_metadata=False)
        except UploadError as e:
            logger.error(f"Failed to list backups for metrics of {source.name}: {e}")
            backups = []

        source_history = [r for r in history if r.source_name == source.name]
        successful = sum(1 for r in source_history if r.status == 'success')
        failed = sum(1 for r in source_history if r.status == 'failed')
        total_size = sum(b.size for b in backups)
        marker = running.get(source.name)

        metrics.append({
            'source_name': source.name,
            'total_backups': len(backups),
            'total_size_bytes': total_size,
            'total_size_mb': round(total_size / 1024 / 1024, 2),
            'successful_backups': successful,
            'failed_backups': failed,
            'success_rate': round(successful / len(source_history) * 100, 2) if source_history else 0,
            'avg_duration_seconds': _average_duration(source_history),
            'currently_running': marker is not None and marker.is_running,
            'last_backup_time': backups[0].last_modified.isoformat() if backups else None,
        })

    return jsonify({'sources': metrics, 'timestamp': _now()})


@bp.route('/history', methods=['GET'])
@api_key_required
def get_history():
    """
    Get job history, optionally for a single source.

    Query params:
        app: Source name

    Returns:
        JSON with the history entries (oldest first)
    """
    state = _state()
    limit = MAX_JOB_HISTORY

    if 'app' in request.args:
        source_name = sanitize_source_name(request.args.get('app'))
        if source_name is None:
            return jsonify({'error': 'Invalid source name'}), 400

        records = state.job_manager.job_history(limit=limit, source_name=source_name)
        return jsonify({
            'source': source_name,
            'history': [r.to_dict() for r in records],
        })

    records = state.job_manager.job_history(limit=limit)
    history = {source.name: [] for source in state.config.sources}
    for record in records:
        history.setdefault(record.source_name, []).append(record.to_dict())

    return jsonify({'history': history})


@bp.route('/backups/<name>', methods=['GET'])
@api_key_required
def list_source_backups(name):
    """
    List the stored backups of a source, newest first.

    Returns:
        JSON array of {key, size, size_mb, last_modified}
    """
    source_name = sanitize_source_name(name)
    if source_name is None:
        return jsonify({'error': 'Invalid source name'}), 400

    state = _state()
    if state.config.get_source(source_name) is None:
        return jsonify({'error': 'Source not found'}), 404

    try:
        backups = state.uploader.list_backups(source_name, include_metadata=False)
    except UploadError as e:
        logger.error(f"Failed to list backups for {source_name}: {e}")
        return jsonify({'error': 'Failed to list backups'}), 502

    return jsonify([b.to_dict() for b in backups])
