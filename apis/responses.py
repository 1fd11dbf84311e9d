from flask import jsonify

from db.errors import WorkflowError


def error_response(message: str, code: int):
    return jsonify({'status': 'error', 'message': message}), code


def workflow_error_response(error: WorkflowError):
    """业务异常转换为对应的HTTP状态码"""
    return error_response(str(error), getattr(error, 'status_code', 400))
