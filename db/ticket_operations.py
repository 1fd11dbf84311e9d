from typing import List, Dict, Any
from datetime import datetime, timezone
import logging

from db.errors import TicketNotFoundError, WorkflowError
from schemas import (
    TicketMessage,
    TICKET_CLOSED,
    TICKET_IN_PROGRESS,
    TICKET_OPEN,
    TICKET_RESOLVED,
    TICKET_STATUSES,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TicketOperations:
    """客服工单与退款申请"""

    def __init__(self, supabase, notifier=None):
        self.supabase = supabase
        self.notifier = notifier

    def create_ticket(self, user_id: str, subject: str, message: str,
                      ticket_type: str = 'general', priority: str = 'normal') -> Dict[str, Any]:
        if not subject or not message:
            raise WorkflowError('Subject and message are required')
        row = {
            'user_id': user_id,
            'subject': subject,
            'message': message,
            'ticket_type': ticket_type,
            'priority': priority,
            'status': TICKET_OPEN,
        }
        result = self.supabase.table('support_tickets').insert(row).execute()
        return result.data[0]

    def get_ticket(self, ticket_id: str) -> Dict[str, Any]:
        result = self.supabase.table('support_tickets').select('*').eq('id', ticket_id).execute()
        if not result.data:
            raise TicketNotFoundError('Ticket not found')
        return result.data[0]

    def list_tickets(self, user_id: str = None, status: str = None) -> List[Dict]:
        query = self.supabase.table('support_tickets').select('*')
        if user_id:
            query = query.eq('user_id', user_id)
        if status:
            query = query.eq('status', status)
        return query.order('created_at', desc=True).execute().data or []

    def list_messages(self, ticket_id: str) -> List[Dict]:
        result = self.supabase.table('ticket_messages').select('*') \
            .eq('ticket_id', ticket_id).order('created_at').execute()
        return result.data or []

    def reply(self, ticket_id: str, sender_id: str, message: str, is_admin: bool) -> Dict[str, Any]:
        """回复工单

        客户回复已解决/已关闭的工单会重新打开；管理员回复 open 工单转为 in_progress

        Returns:
            dict: message 与更新后的 ticket
        """
        if not message:
            raise WorkflowError('Message is required')
        ticket = self.get_ticket(ticket_id)
        if not is_admin and ticket['user_id'] != sender_id:
            raise TicketNotFoundError('Ticket not found')

        entry = TicketMessage(ticket_id=ticket_id, sender_id=sender_id, message=message, is_admin=is_admin)
        created = self.supabase.table('ticket_messages').insert(entry.__dict__).execute().data[0]

        update = {'updated_at': _now()}
        if not is_admin and ticket['status'] in (TICKET_RESOLVED, TICKET_CLOSED):
            update['status'] = TICKET_OPEN
        elif is_admin and ticket['status'] == TICKET_OPEN:
            update['status'] = TICKET_IN_PROGRESS
        result = self.supabase.table('support_tickets').update(update).eq('id', ticket_id).execute()
        ticket = result.data[0] if result.data else {**ticket, **update}

        if is_admin and self.notifier:
            self.notifier.notify_user(
                ticket['user_id'],
                'Support ticket update',
                f"You have a new reply on \"{ticket['subject']}\"",
                category='system',
            )
        return {'message': created, 'ticket': ticket}

    def update_status(self, ticket_id: str, status: str) -> Dict[str, Any]:
        if status not in TICKET_STATUSES:
            raise WorkflowError(f'Unknown ticket status: {status}')
        self.get_ticket(ticket_id)
        result = self.supabase.table('support_tickets').update({'status': status, 'updated_at': _now()}) \
            .eq('id', ticket_id).execute()
        return result.data[0]

    def list_refund_requests(self, status: str = None) -> List[Dict]:
        """主题中包含 refund 的工单即退款申请"""
        query = self.supabase.table('support_tickets').select('*').ilike('subject', '%refund%')
        if status:
            query = query.eq('status', status)
        return query.order('created_at', desc=True).execute().data or []

    def respond_to_refund(self, ticket_id: str, approve: bool, admin_response: str) -> Dict[str, Any]:
        """批准 -> resolved，拒绝 -> closed"""
        ticket = self.get_ticket(ticket_id)
        if 'refund' not in (ticket.get('subject') or '').lower():
            raise WorkflowError('Ticket is not a refund request')
        update = {
            'status': TICKET_RESOLVED if approve else TICKET_CLOSED,
            'admin_response': admin_response,
            'responded_at': _now(),
            'updated_at': _now(),
        }
        result = self.supabase.table('support_tickets').update(update).eq('id', ticket_id).execute()
        ticket = result.data[0]
        if self.notifier:
            self.notifier.notify_user(
                ticket['user_id'],
                'Refund request ' + ('approved' if approve else 'declined'),
                admin_response or '',
                category='system',
            )
        logger.info(f"退款申请 {ticket_id} {'批准' if approve else '拒绝'}")
        return ticket
