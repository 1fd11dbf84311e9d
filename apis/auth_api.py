from flask import Blueprint, jsonify, request, g
from functools import wraps
import logging

from apis.responses import error_response
from db.credit_operations import CreditOperations
from db.supabase_client import get_admin_client
from schemas import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_STAFF

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

ROLE_PRIORITY = (ROLE_ADMIN, ROLE_STAFF, ROLE_CUSTOMER)


def bearer_token():
    auth_header = request.headers.get('Authorization') or ''
    if not auth_header.startswith('Bearer '):
        return None
    return auth_header[len('Bearer '):].strip() or None


def get_user_role(supabase, user_id: str) -> str:
    """从 user_roles 读取角色，多个角色时取权限最高的"""
    result = supabase.table('user_roles').select('role').eq('user_id', user_id).execute()
    roles = {row['role'] for row in result.data or []}
    for role in ROLE_PRIORITY:
        if role in roles:
            return role
    return ROLE_CUSTOMER


def get_authenticated_user():
    """
    根据Authorization头中的Supabase JWT获取当前用户

    Returns:
        tuple: (用户ID, 角色)，认证失败时为 (None, None)
    """
    token = bearer_token()
    if not token:
        return None, None
    try:
        supabase = get_admin_client()
        user_response = supabase.auth.get_user(token)
        if not user_response or not getattr(user_response, 'user', None):
            return None, None
        user_id = str(user_response.user.id)
        return user_id, get_user_role(supabase, user_id)
    except Exception as e:
        logger.warning(f"用户认证失败: {e}")
        return None, None


def require_roles(*roles):
    """要求登录；指定角色时还要求角色匹配。用户信息写入 flask.g"""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            user_id, role = get_authenticated_user()
            if not user_id:
                return error_response('Authentication required', 401)
            if roles and role not in roles:
                return error_response('Insufficient permissions', 403)
            g.user_id = user_id
            g.role = role
            return func(*args, **kwargs)
        return wrapper
    return decorator


@auth_bp.route('/signup', methods=['POST'])
def signup():
    """用户注册，同时创建零余额的资料和 customer 角色"""
    try:
        data = request.get_json() or {}
        email = data.get('email')
        password = data.get('password')
        if not email or not password:
            return error_response('Email and password are required', 400)

        supabase = get_admin_client()
        response = supabase.auth.sign_up({
            "email": email,
            "password": password
        })
        if not response or not response.user:
            return error_response('Sign up failed', 500)

        user_id = str(response.user.id)
        supabase.table('profiles').upsert({
            'id': user_id,
            'email': email,
            'full_name': data.get('full_name'),
            'credit_balance': 0,
            'similarity_credit_balance': 0,
        }).execute()
        supabase.table('user_roles').insert({'user_id': user_id, 'role': ROLE_CUSTOMER}).execute()
        return jsonify({
            'status': 'success',
            'message': 'Account created. Please check your email to confirm.',
            'user': {'id': user_id, 'email': email}
        }), 201
    except Exception as e:
        logger.error(f"用户注册失败: {e}")
        return error_response(str(e), 500)


@auth_bp.route('/login', methods=['POST'])
def login():
    """用户登录"""
    try:
        data = request.get_json() or {}
        email = data.get('email')
        password = data.get('password')
        if not email or not password:
            return error_response('Email and password are required', 400)

        response = get_admin_client().auth.sign_in_with_password({
            "email": email,
            "password": password
        })
        if not response or not response.session:
            return error_response('Login failed', 401)
        return jsonify({
            'status': 'success',
            'user': {'id': response.user.id, 'email': response.user.email},
            'session': {
                'access_token': response.session.access_token,
                'refresh_token': response.session.refresh_token
            }
        }), 200
    except Exception as e:
        logger.error(f"用户登录失败: {e}")
        return error_response('Invalid email or password', 401)


@auth_bp.route('/user', methods=['GET'])
@require_roles()
def get_user():
    """当前用户资料、余额与角色"""
    try:
        profile = CreditOperations(get_admin_client()).get_profile(g.user_id)
        if not profile:
            return error_response('Profile not found', 404)
        return jsonify({
            'status': 'success',
            'user': {
                'id': g.user_id,
                'email': profile.get('email'),
                'full_name': profile.get('full_name'),
                'credit_balance': profile.get('credit_balance') or 0,
                'similarity_credit_balance': profile.get('similarity_credit_balance') or 0,
                'role': g.role,
            }
        }), 200
    except Exception as e:
        logger.error(f"获取用户信息失败: {e}")
        return error_response(str(e), 500)
