from typing import Dict, Optional, Any
from datetime import datetime, timezone
import logging

from db.errors import InsufficientCreditsError
from schemas import CreditTransaction, SCAN_FULL, SCAN_SIMILARITY_ONLY

logger = logging.getLogger(__name__)


def balance_field(credit_type: Optional[str]) -> str:
    """积分类型对应的余额字段"""
    if credit_type in (SCAN_SIMILARITY_ONLY, 'similarity'):
        return 'similarity_credit_balance'
    return 'credit_balance'


def normalize_credit_type(credit_type: Optional[str]) -> str:
    return SCAN_SIMILARITY_ONLY if balance_field(credit_type) == 'similarity_credit_balance' else SCAN_FULL


class CreditOperations:
    """用户积分账本操作类"""

    def __init__(self, supabase):
        self.supabase = supabase

    def get_profile(self, user_id: str) -> Optional[Dict]:
        """根据用户ID获取资料（包含两种余额）"""
        result = self.supabase.table('profiles').select('*').eq('id', user_id).execute()
        return result.data[0] if result.data else None

    def get_balance(self, user_id: str, credit_type: str = SCAN_FULL) -> int:
        profile = self.get_profile(user_id)
        if not profile:
            return 0
        return profile.get(balance_field(credit_type)) or 0

    def adjust_balance(
            self,
            user_id: str,
            amount: int,
            credit_type: str,
            transaction_type: str,
            description: str = None,
            performed_by: str = None,
    ) -> Dict[str, Any]:
        """调整余额并记录一条积分流水

        Args:
            user_id: 用户ID
            amount: 变动数量，负数表示扣减
            credit_type: full 或 similarity_only
            transaction_type: purchase / usage / refund / admin_adjustment / expiration
            description: 流水说明
            performed_by: 操作人ID

        Returns:
            dict: balance_before、balance_after
        """
        field = balance_field(credit_type)
        profile = self.get_profile(user_id)
        if not profile:
            raise InsufficientCreditsError(f'用户 {user_id} 不存在')

        balance_before = profile.get(field) or 0
        balance_after = balance_before + amount
        if balance_after < 0:
            raise InsufficientCreditsError('Insufficient credits')

        self.supabase.table('profiles').update({field: balance_after}).eq('id', user_id).execute()

        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            transaction_type=transaction_type,
            credit_type=normalize_credit_type(credit_type),
            description=description,
            performed_by=performed_by,
        )
        try:
            self.supabase.table('credit_transactions').insert(transaction.to_row()).execute()
        except Exception as e:
            # 余额已写入，流水失败只记录
            logger.error(f"写入积分流水失败: {e}")

        logger.info(f"用户 {user_id} {field}: {balance_before} -> {balance_after} ({transaction_type})")
        return {'balance_before': balance_before, 'balance_after': balance_after}

    def grant_credits(self, user_id: str, credits: int, credit_type: str, description: str) -> Dict[str, Any]:
        return self.adjust_balance(user_id, credits, credit_type, 'purchase', description)

    def consume_credit(self, user_id: str, credit_type: str, description: str) -> Dict[str, Any]:
        return self.adjust_balance(user_id, -1, credit_type, 'usage', description)

    def refund_credit(self, user_id: str, credit_type: str, description: str, performed_by: str = None) -> Dict[str, Any]:
        return self.adjust_balance(user_id, 1, credit_type, 'refund', description, performed_by)

    def set_balance(self, user_id: str, new_balance: int, credit_type: str, admin_id: str) -> Dict[str, Any]:
        """管理员直接设置余额，按差值记录流水"""
        if new_balance < 0:
            raise InsufficientCreditsError('Balance cannot be negative')
        current = self.get_balance(user_id, credit_type)
        return self.adjust_balance(
            user_id,
            new_balance - current,
            credit_type,
            'admin_adjustment',
            f'Admin set balance to {new_balance}',
            admin_id,
        )

    def expire_credits(self, now: datetime = None, notifier=None) -> Dict[str, Any]:
        """过期积分：扣除 credit_validity 中已过期且未用完的部分

        余额不足时只扣到0；每条记录单独处理，失败记录在 errors 中

        Returns:
            dict: processed、expired_credits、errors
        """
        if notifier is None:
            from notifications.notifier import Notifier
            notifier = Notifier(self.supabase)
        now = now or datetime.now(timezone.utc)
        result = self.supabase.table('credit_validity').select('*') \
            .eq('expired', False) \
            .lt('expires_at', now.isoformat()) \
            .execute()
        rows = result.data or []
        logger.info(f"发现 {len(rows)} 条过期积分记录")

        processed = 0
        expired_total = 0
        errors = []
        for row in rows:
            try:
                remaining = row.get('remaining_credits') or 0
                deducted = 0
                if remaining > 0:
                    balance = self.get_balance(row['user_id'], row.get('credit_type'))
                    deducted = min(remaining, balance)
                if deducted > 0:
                    self.adjust_balance(
                        row['user_id'], -deducted, row.get('credit_type'), 'expiration',
                        f'Time-limited credits expired ({deducted} credits)')
                    notifier.notify_user(
                        row['user_id'], 'Credits Expired',
                        f'{deducted} time-limited credits have expired and been removed from your balance.')
                self.supabase.table('credit_validity').update({
                    'expired': True,
                    'remaining_credits': 0,
                    'credits_expired_unused': remaining,
                }).eq('id', row['id']).execute()
                processed += 1
                expired_total += deducted
            except Exception as e:
                logger.error(f"处理过期积分 {row.get('id')} 失败: {e}")
                errors.append(f"Credit {row.get('id')}: {e}")
        return {'processed': processed, 'expired_credits': expired_total, 'errors': errors}
