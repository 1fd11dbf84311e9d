from flask import Blueprint, jsonify, request, g
import logging

from apis.auth_api import require_roles
from apis.responses import error_response
from db.supabase_client import get_admin_client
from notifications.email_campaign import CampaignSender
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

admin_email = Blueprint('admin_email', __name__, url_prefix='/api')


@admin_email.route('/admin/send-email', methods=['POST'])
@require_roles(ROLE_ADMIN)
def send_email():
    """
    管理员群发邮件

    请求体: type, targetAudience, specificUserIds, subject, title, message, ctaText, ctaUrl, logId
    每位收件人单独发送，不会出现多收件人邮件；发送在后台进行，进度见 email_logs
    """
    try:
        payload = request.get_json() or {}
        result = CampaignSender(get_admin_client()).start_campaign(payload, g.user_id)
        return jsonify({'success': True, **result}), 202
    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f"群发邮件失败: {e}", exc_info=True)
        return error_response(str(e), 500)


@admin_email.route('/unsubscribe', methods=['GET', 'POST'])
def unsubscribe():
    """邮件中的退订链接"""
    try:
        user_id = request.args.get('uid')
        token = request.args.get('token')
        if not CampaignSender(get_admin_client()).unsubscribe(user_id, token):
            return error_response('Invalid unsubscribe link', 400)
        return jsonify({'success': True, 'message': 'You have been unsubscribed from promotional emails.'}), 200
    except Exception as e:
        logger.error(f"退订失败: {e}")
        return error_response(str(e), 500)
