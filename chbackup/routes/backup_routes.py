"""
Backup routes - remote listing, table listing and upload triggers.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from chbackup.backup.storage import create_destination
from chbackup.clickhouse import ClickHouse
from chbackup.exceptions import (
    BackupError, BackupNotFoundError, ConfigError, UploadInProgressError
)
from chbackup.scheduler import cancel_upload, get_upload_status, trigger_upload_now


logger = logging.getLogger(__name__)

bp = Blueprint('backup', __name__, url_prefix='/backup')


def _config():
    return current_app.config['CHBACKUP']


def _flag(name: str) -> bool:
    """Query flags count as set when present, unless explicitly false."""
    if name not in request.args:
        return False
    return request.args.get(name, '').lower() not in ('0', 'false', 'no')


@bp.errorhandler(BackupError)
def handle_backup_error(e):
    if isinstance(e, ConfigError):
        code = 400
    elif isinstance(e, BackupNotFoundError):
        code = 404
    elif isinstance(e, UploadInProgressError):
        code = 409
    else:
        code = 500
    logger.error(f"{request.method} {request.path} failed: {e}")
    return jsonify({'error': str(e)}), code


@bp.errorhandler(ValueError)
def handle_value_error(e):
    return jsonify({'error': str(e)}), 400


@bp.route('/list', methods=['GET'])
def list_remote():
    """
    List backups on remote storage.

    Returns:
        JSON array of backups, oldest first
    """
    config = _config()
    if config.general.remote_storage in ('none', 'custom'):
        return jsonify([])

    ch = ClickHouse(config.clickhouse)
    destination = create_destination(config, ch)
    destination.connect()
    try:
        backups = destination.list_backups(with_metadata=True)
    finally:
        destination.close()
        ch.close()

    backups_data = []
    for backup in backups:
        metadata = backup.metadata
        backups_data.append({
            'name': backup.backup_name,
            'size': backup.size,
            'upload_date': backup.upload_date.isoformat() if backup.upload_date else None,
            'required': metadata.required_backup if metadata else '',
            'data_size': metadata.data_size if metadata else 0,
            'metadata_size': metadata.metadata_size if metadata else 0,
            'compressed_size': metadata.compressed_size if metadata else 0,
            'broken': backup.broken
        })

    return jsonify(backups_data)


@bp.route('/tables', methods=['GET'])
def list_tables():
    """
    List tables on the server.

    Query params:
        - table: Comma separated db.table globs (optional)

    Returns:
        JSON array of tables with their skip flag
    """
    config = _config()
    ch = ClickHouse(config.clickhouse)
    try:
        tables = ch.get_tables(request.args.get('table', ''), config.general.skip_tables)
    finally:
        ch.close()

    return jsonify([
        {
            'database': t.database,
            'table': t.table,
            'total_bytes': t.total_bytes,
            'skip': t.skip
        }
        for t in tables
    ])


@bp.route('/upload/<backup_name>', methods=['POST'])
def upload(backup_name):
    """
    Upload a local backup in the background.

    Query params:
        - table: Comma separated db.table globs (optional)
        - partitions: Comma separated partition ids (optional)
        - diff-from: Local backup for an incremental upload (optional)
        - diff-from-remote: Remote backup for an incremental upload (optional)
        - schema: Upload table metadata only (flag)
        - resume: Resume an interrupted upload (flag)

    Returns:
        JSON with the run ID, 202
    """
    diff_from = request.args.get('diff-from', '')
    diff_from_remote = request.args.get('diff-from-remote', '')
    if diff_from and diff_from_remote:
        return jsonify({'error': 'choose only one of diff-from and diff-from-remote'}), 400

    partitions = [p for p in request.args.get('partitions', '').split(',') if p]

    run_id = trigger_upload_now(
        backup_name,
        table_pattern=request.args.get('table', ''),
        partitions=partitions or None,
        diff_from=diff_from,
        diff_from_remote=diff_from_remote,
        schema_only=_flag('schema'),
        resume=_flag('resume')
    )

    return jsonify({
        'status': 'acknowledged',
        'operation': 'upload',
        'backup_name': backup_name,
        'id': run_id
    }), 202


@bp.route('/status', methods=['GET'])
def status():
    """
    Get status of recent uploads.

    Returns:
        JSON array of runs with status, error and run log
    """
    return jsonify(get_upload_status())


@bp.route('/kill', methods=['POST'])
def kill():
    """
    Cancel the running upload.

    Returns:
        JSON with the cancellation outcome, 404 if nothing is running
    """
    if not cancel_upload():
        return jsonify({'error': 'no upload is running'}), 404
    return jsonify({'status': 'cancelled'})
