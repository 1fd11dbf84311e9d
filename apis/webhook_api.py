from flask import Blueprint, jsonify, request
import json
import logging

from apis.responses import error_response
from config import PADDLE_CONFIG
from db.payment_operations import PaymentOperations, verify_paddle_signature
from db.supabase_client import get_admin_client

logger = logging.getLogger(__name__)

webhooks = Blueprint('webhooks', __name__, url_prefix='/api/webhooks')


@webhooks.route('/paddle', methods=['POST'])
def paddle_webhook():
    """
    Paddle Webhook

    1. 校验 paddle-signature
    2. 按 event_id 去重
    3. transaction.completed 通过幂等键只入账一次
    """
    raw_body = request.get_data()
    secret = PADDLE_CONFIG.get('webhook_secret')
    if secret and not verify_paddle_signature(raw_body, request.headers.get('paddle-signature'), secret):
        return error_response('Invalid signature', 401)
    if not secret:
        logger.warning("未配置Paddle密钥，跳过签名校验")

    try:
        event = json.loads(raw_body or b'{}')
    except ValueError:
        return error_response('Invalid JSON', 400)

    try:
        result = PaymentOperations(get_admin_client()).process_paddle_event(event)
        return jsonify(result), 200
    except ValueError as e:
        return error_response(str(e), 400)
    except Exception as e:
        logger.error(f"处理Paddle事件失败: {e}", exc_info=True)
        return error_response(str(e), 500)


@webhooks.route('/viva', methods=['GET'])
def viva_verification():
    """Viva验证：原样返回 settings 中的验证密钥"""
    try:
        key = PaymentOperations(get_admin_client()).viva_verification_key()
        if not key:
            logger.error("settings 中没有Viva验证密钥")
            return error_response('Verification key not configured', 500)
        return jsonify({'Key': key}), 200
    except Exception as e:
        logger.error(f"读取Viva验证密钥失败: {e}")
        return error_response(str(e), 500)


@webhooks.route('/viva', methods=['POST'])
def viva_webhook():
    try:
        payload = request.get_json(silent=True)
        if not payload or 'EventTypeId' not in payload:
            return error_response('Invalid payload', 400)
        result = PaymentOperations(get_admin_client()).process_viva_event(payload)
        return jsonify(result), 200
    except Exception as e:
        logger.error(f"处理Viva事件失败: {e}", exc_info=True)
        return jsonify({'success': False, 'error': str(e)}), 500
