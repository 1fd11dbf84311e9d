"""业务异常，由路由层转换为HTTP状态码"""


class WorkflowError(Exception):
    """业务规则拒绝了本次操作"""
    status_code = 400


class ValidationError(WorkflowError):
    """请求参数不合法"""
    status_code = 400


class InvalidTransitionError(WorkflowError):
    status_code = 409


class MissingReportsError(WorkflowError):
    status_code = 400


class InsufficientCreditsError(WorkflowError):
    status_code = 402


class MagicLinkUnavailableError(WorkflowError):
    status_code = 403


class MagicLinkBusyError(MagicLinkUnavailableError):
    """并发上传抢占了计数，可以重试"""
    status_code = 409


class DocumentNotFoundError(WorkflowError):
    status_code = 404


class DocumentAlreadyClaimedError(WorkflowError):
    status_code = 409


class TicketNotFoundError(WorkflowError):
    status_code = 404


def is_unique_violation(error) -> bool:
    """判断是否为Postgres唯一约束冲突（23505）"""
    code = getattr(error, 'code', None)
    if code == '23505':
        return True
    return 'duplicate key' in str(error).lower()
