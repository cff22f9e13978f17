from flask import Blueprint, current_app, jsonify, request, session

from utils import admin_required
from utils.audit import log_event
from utils.notify import NullChannel
from utils.reminders import run_reminder_sweep

reminder_bp = Blueprint('reminders', __name__, url_prefix='/reminders')


@reminder_bp.route('/run', methods=['POST'])
@admin_required
def run_reminders():
    """Trigger one reminder sweep now (the scheduler runs the same sweep)."""
    data = request.get_json(silent=True) or {}
    dry_run = bool(data.get('dry_run'))
    lookahead = data.get('lookahead_days')
    channel = NullChannel() if dry_run else None

    result = run_reminder_sweep(
        channel=channel,
        lookahead_days=int(lookahead) if lookahead not in (None, '') else None,
    )
    current_app.logger.info("manual reminder sweep by admin: sent=%s failed=%s", result.sent, result.failed)
    log_event(
        'reminder_sweep',
        detail=f"sent={result.sent} skipped={result.skipped} failed={result.failed} dry_run={dry_run}",
        campus_id=session.get('campus_id'),
    )
    return jsonify({'ok': True, 'dry_run': dry_run, **result.to_dict()})
