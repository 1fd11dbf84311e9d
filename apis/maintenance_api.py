from flask import Blueprint, jsonify, request
import hmac
import logging

from apis.responses import error_response
from config import DOCUMENT_CONFIG
from db.credit_operations import CreditOperations
from db.document_operations import DocumentOperations
from db.supabase_client import get_admin_client

logger = logging.getLogger(__name__)

maintenance = Blueprint('maintenance', __name__, url_prefix='/api/maintenance')


def _authorized() -> bool:
    expected = DOCUMENT_CONFIG.get('maintenance_key')
    provided = request.headers.get('X-Maintenance-Key') or ''
    return bool(expected) and hmac.compare_digest(expected, provided)


@maintenance.route('/auto-release', methods=['POST'])
def auto_release():
    """定时任务调用：释放超时未完成的文档"""
    if not _authorized():
        return error_response('Unauthorized', 401)
    try:
        data = request.get_json(silent=True) or {}
        timeout = data.get('timeout_minutes')
        released = DocumentOperations(get_admin_client()).release_overdue(int(timeout) if timeout else None)
        return jsonify({'success': True, 'released': released, 'count': len(released)}), 200
    except Exception as e:
        logger.error(f"自动释放文档失败: {e}", exc_info=True)
        return error_response(str(e), 500)


@maintenance.route('/expire-credits', methods=['POST'])
def expire_credits():
    """定时任务调用：扣除已过期的限时积分"""
    if not _authorized():
        return error_response('Unauthorized', 401)
    try:
        result = CreditOperations(get_admin_client()).expire_credits()
        return jsonify({'success': True, **result}), 200
    except Exception as e:
        logger.error(f"处理过期积分失败: {e}", exc_info=True)
        return error_response(str(e), 500)
