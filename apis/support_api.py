from flask import Blueprint, jsonify, request, g
import logging

from apis.auth_api import require_roles
from apis.responses import error_response, workflow_error_response
from db.errors import TicketNotFoundError, WorkflowError
from db.supabase_client import get_admin_client
from db.ticket_operations import TicketOperations
from notifications.notifier import Notifier
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

support = Blueprint('support', __name__, url_prefix='/api')


def ticket_ops() -> TicketOperations:
    supabase = get_admin_client()
    return TicketOperations(supabase, Notifier(supabase))


@support.route('/tickets', methods=['POST'])
@require_roles()
def create_ticket():
    try:
        data = request.get_json() or {}
        ticket = ticket_ops().create_ticket(
            g.user_id, data.get('subject'), data.get('message'),
            data.get('ticket_type', 'general'), data.get('priority', 'normal'))
        return jsonify({'status': 'success', 'ticket': ticket}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"创建工单失败: {e}")
        return error_response(str(e), 500)


@support.route('/tickets', methods=['GET'])
@require_roles()
def list_tickets():
    """客户看自己的工单，管理员看全部"""
    try:
        user_id = None if g.role == ROLE_ADMIN else g.user_id
        tickets = ticket_ops().list_tickets(user_id, request.args.get('status'))
        return jsonify({'status': 'success', 'tickets': tickets}), 200
    except Exception as e:
        logger.error(f"获取工单失败: {e}")
        return error_response(str(e), 500)


@support.route('/tickets/<ticket_id>/messages', methods=['GET'])
@require_roles()
def list_messages(ticket_id):
    try:
        ops = ticket_ops()
        ticket = ops.get_ticket(ticket_id)
        if g.role != ROLE_ADMIN and ticket['user_id'] != g.user_id:
            raise TicketNotFoundError('Ticket not found')
        return jsonify({'status': 'success', 'ticket': ticket, 'messages': ops.list_messages(ticket_id)}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"获取工单消息失败: {e}")
        return error_response(str(e), 500)


@support.route('/tickets/<ticket_id>/messages', methods=['POST'])
@require_roles()
def reply(ticket_id):
    try:
        data = request.get_json() or {}
        result = ticket_ops().reply(ticket_id, g.user_id, data.get('message'), is_admin=g.role == ROLE_ADMIN)
        return jsonify({'status': 'success', **result}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"回复工单失败: {e}")
        return error_response(str(e), 500)


@support.route('/tickets/<ticket_id>/status', methods=['POST'])
@require_roles(ROLE_ADMIN)
def update_ticket_status(ticket_id):
    try:
        data = request.get_json() or {}
        ticket = ticket_ops().update_status(ticket_id, data.get('status'))
        return jsonify({'status': 'success', 'ticket': ticket}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"更新工单状态失败: {e}")
        return error_response(str(e), 500)


@support.route('/admin/refunds', methods=['GET'])
@require_roles(ROLE_ADMIN)
def list_refunds():
    try:
        requests_ = ticket_ops().list_refund_requests(request.args.get('status'))
        return jsonify({'status': 'success', 'refunds': requests_}), 200
    except Exception as e:
        logger.error(f"获取退款申请失败: {e}")
        return error_response(str(e), 500)


@support.route('/admin/refunds/<ticket_id>/respond', methods=['POST'])
@require_roles(ROLE_ADMIN)
def respond_refund(ticket_id):
    """处理退款申请: {action: approve|decline, response}"""
    try:
        data = request.get_json() or {}
        action = data.get('action')
        if action not in ('approve', 'decline'):
            return error_response('action must be approve or decline', 400)
        ticket = ticket_ops().respond_to_refund(ticket_id, action == 'approve', data.get('response'))
        return jsonify({'status': 'success', 'ticket': ticket}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"处理退款申请失败: {e}")
        return error_response(str(e), 500)
