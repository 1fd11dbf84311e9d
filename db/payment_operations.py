from typing import Dict, Optional, Any
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import logging

from config import PADDLE_CONFIG, VIVA_CONFIG
from db.credit_operations import CreditOperations, normalize_credit_type
from db.errors import is_unique_violation

logger = logging.getLogger(__name__)

VIVA_EVENT_TYPES = {
    1796: 'Transaction Payment Created',
    1797: 'Transaction Reversal Created',
    1798: 'Transaction Failed',
    4865: 'Order Updated',
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_paddle_signature(header: str) -> Dict[str, str]:
    """解析 paddle-signature 头: ts=...;h1=..."""
    parts = {}
    for item in (header or '').split(';'):
        if '=' in item:
            key, value = item.split('=', 1)
            parts[key.strip()] = value.strip()
    return parts


def verify_paddle_signature(raw_body: bytes, header: Optional[str], secret: Optional[str]) -> bool:
    """校验Paddle签名：HMAC-SHA256(secret, "ts:rawBody")，常量时间比较

    Args:
        raw_body: 原始请求体
        header: paddle-signature 请求头
        secret: webhook密钥

    Returns:
        bool: 签名是否有效
    """
    if not secret:
        logger.error("未配置PADDLE_WEBHOOK_SECRET")
        return False
    parts = parse_paddle_signature(header)
    ts, h1 = parts.get('ts'), parts.get('h1')
    if not ts or not h1:
        logger.warning("Paddle签名头缺失或格式错误")
        return False
    signed = ts.encode('utf-8') + b':' + raw_body
    expected = hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, h1):
        logger.warning("Paddle签名无效")
        return False
    return True


def viva_event_id(payload: Dict[str, Any]) -> str:
    """Viva事件ID，同一事件重复投递得到相同的ID"""
    if payload.get('CorrelationId'):
        return str(payload['CorrelationId'])
    data = payload.get('EventData') or {}
    return f"{payload.get('EventTypeId')}-{data.get('OrderCode', '')}-{data.get('TransactionId', '')}"


class PaymentOperations:
    """支付Webhook处理：去重日志、幂等入账、后续通知"""

    def __init__(self, supabase, notifier=None):
        self.supabase = supabase
        self.credit_ops = CreditOperations(supabase)
        if notifier is None:
            from notifications.notifier import Notifier
            notifier = Notifier(supabase)
        self.notifier = notifier

    def _insert_unique(self, table: str, row: Dict[str, Any]) -> bool:
        """插入带唯一约束的行，冲突时返回False"""
        try:
            self.supabase.table(table).insert(row).execute()
            return True
        except Exception as e:
            if is_unique_violation(e):
                return False
            raise

    def _previous_attempt_failed(self, table: str, event_id: str) -> bool:
        """上一次处理出错的事件允许重新投递后再处理"""
        result = self.supabase.table(table).select('processed, error_message').eq('event_id', event_id).execute()
        if not result.data:
            return False
        row = result.data[0]
        return not row.get('processed') and bool(row.get('error_message'))

    def claim_idempotency_key(self, key: str, provider: str, user_id: str = None) -> bool:
        """写入幂等键，只有第一次写入成功的请求可以入账"""
        return self._insert_unique('payment_idempotency_keys', {
            'idempotency_key': key,
            'provider': provider,
            'user_id': user_id,
        })

    def _fanout(self, step: str, func, *args, **kwargs):
        """后续步骤失败只记录，不回滚已入账的积分"""
        try:
            func(*args, **kwargs)
        except Exception as e:
            logger.error(f"支付后续步骤 {step} 失败: {e}")

    # Paddle

    def process_paddle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        处理一条已验签的Paddle事件

        Returns:
            dict: received，以及 duplicate / credited 等处理结果
        """
        event_id = event.get('event_id')
        event_type = event.get('event_type')
        data = event.get('data') or {}
        if not event_id:
            raise ValueError('Missing event_id')

        logged = self._insert_unique('paddle_webhook_logs', {
            'event_id': event_id,
            'event_type': event_type,
            'payload': event,
            'processed': False,
        })
        if not logged and not self._previous_attempt_failed('paddle_webhook_logs', event_id):
            logger.info(f"Paddle事件重复投递: {event_id}")
            return {'received': True, 'duplicate': True}

        result = {'received': True}
        error_message = None
        try:
            if event_type == 'transaction.completed':
                result.update(self._paddle_transaction_completed(data))
            elif event_type == 'transaction.payment_failed':
                user_id = (data.get('custom_data') or {}).get('user_id')
                if user_id:
                    self.notifier.payment_failed(user_id, 'Paddle')
            elif event_type == 'subscription.created':
                self._paddle_subscription_created(data)
            elif event_type == 'subscription.updated':
                self._paddle_subscription_updated(data)
            elif event_type == 'subscription.canceled':
                self._paddle_subscription_canceled(data)
            else:
                logger.info(f"忽略Paddle事件类型: {event_type}")
        except Exception as e:
            error_message = str(e)
            raise
        finally:
            self.supabase.table('paddle_webhook_logs').update({
                'processed': error_message is None,
                'error_message': error_message,
                'processed_at': _now().isoformat(),
            }).eq('event_id', event_id).execute()
        return result

    def _paddle_transaction_completed(self, data: Dict[str, Any]) -> Dict[str, Any]:
        custom = data.get('custom_data') or {}
        user_id = custom.get('user_id')
        credits = int(custom.get('credits') or 0)
        credit_type = normalize_credit_type(custom.get('credit_type'))
        transaction_id = data.get('id')
        if not user_id or credits <= 0 or not transaction_id:
            logger.error(f"Paddle交易缺少必要字段: {transaction_id}")
            return {'credited': False, 'error': 'Missing user_id, credits or transaction id'}

        if not self.claim_idempotency_key(f'paddle:{transaction_id}', 'paddle', user_id):
            logger.info(f"Paddle交易 {transaction_id} 已入账，跳过")
            return {'credited': False, 'already_processed': True}

        totals = (data.get('details') or {}).get('totals') or {}
        amount = int(totals.get('total') or totals.get('grand_total') or 0) / 100
        currency = data.get('currency_code') or 'USD'

        balances = self.credit_ops.grant_credits(
            user_id, credits, credit_type, f'Paddle purchase: {credits} credits')
        self.supabase.table('paddle_payments').insert({
            'user_id': user_id,
            'transaction_id': transaction_id,
            'customer_id': data.get('customer_id'),
            'credits': credits,
            'amount_usd': amount,
            'currency': currency,
            'credit_type': credit_type,
            'status': 'completed',
            'completed_at': _now().isoformat(),
        }).execute()
        logger.info(f"Paddle交易 {transaction_id} 为用户 {user_id} 增加 {credits} 积分")

        validity_days = int(custom.get('validity_days') or PADDLE_CONFIG['default_validity_days'])
        self._fanout('invoice', self._create_invoice, user_id, amount, currency, credits, 'paddle', transaction_id)
        self._fanout('receipt', self._create_receipt, user_id, amount, currency, credits, 'Paddle', transaction_id)
        self._fanout('credit_validity', self._create_credit_validity, user_id, credits, credit_type, validity_days)
        self._fanout('user_notification', self.notifier.payment_succeeded, user_id, credits, amount, currency, 'Paddle')
        self._fanout('admin_notification', self.notifier.notify_admins_of_payment,
                     user_id, credits, amount, currency, 'Paddle')
        return {'credited': True, **balances}

    def _paddle_subscription_created(self, data: Dict[str, Any]):
        user_id = (data.get('custom_data') or {}).get('user_id')
        if not user_id:
            return
        item = (data.get('items') or [{}])[0]
        period = data.get('current_billing_period') or {}
        self.supabase.table('paddle_subscriptions').insert({
            'user_id': user_id,
            'subscription_id': data.get('id'),
            'paddle_customer_id': data.get('customer_id'),
            'product_id': (item.get('product') or {}).get('id'),
            'price_id': (item.get('price') or {}).get('id'),
            'status': data.get('status') or 'active',
            'current_period_start': period.get('starts_at'),
            'current_period_end': period.get('ends_at'),
        }).execute()
        self.notifier.notify_user(user_id, 'Subscription active',
                                  'Your subscription is now active. Credits will be added each billing period.')

    def _paddle_subscription_updated(self, data: Dict[str, Any]):
        period = data.get('current_billing_period') or {}
        self.supabase.table('paddle_subscriptions').update({
            'status': data.get('status'),
            'current_period_start': period.get('starts_at'),
            'current_period_end': period.get('ends_at'),
            'updated_at': _now().isoformat(),
        }).eq('subscription_id', data.get('id')).execute()

    def _paddle_subscription_canceled(self, data: Dict[str, Any]):
        result = self.supabase.table('paddle_subscriptions').update({
            'status': 'canceled',
            'canceled_at': data.get('canceled_at') or _now().isoformat(),
        }).eq('subscription_id', data.get('id')).execute()
        for row in result.data or []:
            self.notifier.notify_user(row['user_id'], 'Subscription canceled',
                                      'Your subscription has been canceled.')

    # Viva

    def viva_verification_key(self) -> Optional[str]:
        result = self.supabase.table('settings').select('value') \
            .eq('key', VIVA_CONFIG['verification_setting_key']).execute()
        return result.data[0]['value'] if result.data else None

    def process_viva_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        处理Viva事件（按 EventTypeId 区分）

        Returns:
            dict: success 以及处理说明
        """
        event_type_id = payload.get('EventTypeId')
        data = payload.get('EventData') or {}
        order_code = str(data.get('OrderCode') or '')
        event_id = viva_event_id(payload)

        logged = self._insert_unique('viva_webhook_logs', {
            'event_id': event_id,
            'event_type_id': event_type_id,
            'event_type': VIVA_EVENT_TYPES.get(event_type_id, f'Unknown ({event_type_id})'),
            'order_code': order_code,
            'transaction_id': data.get('TransactionId'),
            'payload': payload,
            'processed': False,
        })
        if not logged:
            logger.info(f"Viva事件重复投递: {event_id}")
            return {'success': True, 'duplicate': True}

        if event_type_id == VIVA_CONFIG['success_event_id']:
            result = self._viva_payment_succeeded(order_code, data)
        elif event_type_id == VIVA_CONFIG['failed_event_id']:
            result = self._viva_payment_failed(order_code, data)
        else:
            result = {'success': True, 'message': 'Event acknowledged'}

        self.supabase.table('viva_webhook_logs').update({
            'processed': True,
            'processed_at': _now().isoformat(),
            'error_message': result.get('error'),
        }).eq('event_id', event_id).execute()
        return result

    def _get_viva_payment(self, order_code: str) -> Optional[Dict]:
        result = self.supabase.table('viva_payments').select('*').eq('order_code', order_code).execute()
        return result.data[0] if result.data else None

    def _viva_payment_succeeded(self, order_code: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payment = self._get_viva_payment(order_code)
        if not payment:
            logger.error(f"找不到Viva订单: {order_code}")
            return {'success': False, 'error': 'Payment record not found'}
        if payment.get('status') == 'completed':
            return {'success': True, 'message': 'Already processed'}

        user_id = payment['user_id']
        if not self.claim_idempotency_key(f'viva:{order_code}', 'viva', user_id):
            logger.info(f"Viva订单 {order_code} 已入账，跳过")
            return {'success': True, 'message': 'Already processed'}

        transaction_id = data.get('TransactionId')
        self.supabase.table('viva_payments').update({
            'status': 'completed',
            'transaction_id': transaction_id,
            'completed_at': _now().isoformat(),
        }).eq('id', payment['id']).execute()

        credits = int(payment.get('credits') or 0)
        credit_type = normalize_credit_type(payment.get('credit_type'))
        balances = self.credit_ops.grant_credits(
            user_id, credits, credit_type, f'Viva purchase: {credits} credits')
        amount = float(payment.get('amount_usd') or 0)
        currency = payment.get('currency') or 'USD'
        logger.info(f"Viva订单 {order_code} 为用户 {user_id} 增加 {credits} 积分")

        self._fanout('receipt', self._create_receipt, user_id, amount, currency, credits, 'Viva', transaction_id)
        self._fanout('user_notification', self.notifier.payment_succeeded, user_id, credits, amount, currency, 'Viva')
        self._fanout('admin_notification', self.notifier.notify_admins_of_payment,
                     user_id, credits, amount, currency, 'Viva')
        return {'success': True, 'credited': True, **balances}

    def _viva_payment_failed(self, order_code: str, data: Dict[str, Any]) -> Dict[str, Any]:
        payment = self._get_viva_payment(order_code)
        if not payment:
            return {'success': False, 'error': 'Payment record not found'}
        if payment.get('status') == 'completed':
            return {'success': True, 'message': 'Already completed'}
        self.supabase.table('viva_payments').update({'status': 'failed'}).eq('id', payment['id']).execute()
        self._fanout('payment_failed', self.notifier.payment_failed, payment['user_id'], 'Viva',
                     data.get('StatusId'))
        return {'success': True, 'message': 'Payment marked as failed'}

    # 票据

    def _customer(self, user_id: str) -> Dict[str, Any]:
        profile = self.credit_ops.get_profile(user_id) or {}
        return {'customer_name': profile.get('full_name') or 'Customer', 'customer_email': profile.get('email')}

    def _create_invoice(self, user_id, amount, currency, credits, payment_type, transaction_id):
        self.supabase.table('invoices').insert({
            'user_id': user_id,
            'amount_usd': amount,
            'credits': credits,
            'payment_type': payment_type,
            'transaction_id': transaction_id,
            'description': 'Plagiarism & AI Content Analysis Service',
            'status': 'paid',
            'currency': currency,
            'subtotal': amount,
            'quantity': credits,
            'unit_price': round(amount / credits, 2) if credits else amount,
            'paid_at': _now().isoformat(),
            **self._customer(user_id),
        }).execute()

    def _create_receipt(self, user_id, amount, currency, credits, payment_method, transaction_id):
        self.supabase.table('receipts').insert({
            'user_id': user_id,
            'description': 'Plagiarism & AI Content Analysis Service',
            'quantity': credits,
            'unit_price': round(amount / credits, 2) if credits else amount,
            'subtotal': amount,
            'amount_paid': amount,
            'currency': currency,
            'payment_method': payment_method,
            'transaction_id': transaction_id,
            'credits': credits,
            'receipt_date': _now().isoformat(),
            **self._customer(user_id),
        }).execute()

    def _create_credit_validity(self, user_id, credits, credit_type, validity_days):
        self.supabase.table('credit_validity').insert({
            'user_id': user_id,
            'credits_amount': credits,
            'remaining_credits': credits,
            'expires_at': (_now() + timedelta(days=validity_days)).isoformat(),
            'credit_type': credit_type,
            'expired': False,
        }).execute()
