from flask import Blueprint, jsonify, request, g
import logging

from apis.auth_api import require_roles
from apis.responses import error_response, workflow_error_response
from db.errors import WorkflowError
from db.magic_link_operations import MagicLinkOperations
from db.supabase_client import get_admin_client
from schemas import ROLE_ADMIN

logger = logging.getLogger(__name__)

magic_links = Blueprint('magic_links', __name__)


def public_link(link: dict) -> dict:
    """访客可见的链接信息"""
    return {
        'max_uploads': link['max_uploads'],
        'current_uploads': link.get('current_uploads') or 0,
        'remaining_uploads': max(link['max_uploads'] - (link.get('current_uploads') or 0), 0),
        'expires_at': link.get('expires_at'),
        'has_guest_email': bool(link.get('guest_email')),
    }


@magic_links.route('/api/magic-links', methods=['POST'])
@require_roles(ROLE_ADMIN)
def create_magic_link():
    try:
        data = request.get_json() or {}
        max_uploads = int(data.get('max_uploads', 1))
        expires_in_hours = data.get('expires_in_hours')
        link = MagicLinkOperations(get_admin_client()).create_link(
            max_uploads, g.user_id, int(expires_in_hours) if expires_in_hours else None)
        return jsonify({'status': 'success', 'link': link}), 201
    except ValueError:
        return error_response('max_uploads and expires_in_hours must be integers', 400)
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"创建魔法链接失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/api/magic-links', methods=['GET'])
@require_roles(ROLE_ADMIN)
def list_magic_links():
    try:
        return jsonify({'status': 'success', 'links': MagicLinkOperations(get_admin_client()).list_links()}), 200
    except Exception as e:
        logger.error(f"获取魔法链接失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/api/magic-links/<link_id>/disable', methods=['POST'])
@require_roles(ROLE_ADMIN)
def disable_magic_link(link_id):
    try:
        if not MagicLinkOperations(get_admin_client()).disable_link(link_id):
            return error_response('Link not found', 404)
        return jsonify({'status': 'success'}), 200
    except Exception as e:
        logger.error(f"停用魔法链接失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/api/magic-links/<link_id>', methods=['DELETE'])
@require_roles(ROLE_ADMIN)
def delete_magic_link(link_id):
    try:
        if not MagicLinkOperations(get_admin_client()).delete_link(link_id):
            return error_response('Link not found', 404)
        return jsonify({'status': 'success'}), 200
    except Exception as e:
        logger.error(f"删除魔法链接失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/upload', methods=['GET'])
def guest_link_status():
    """访客打开上传页面时校验链接"""
    try:
        link = MagicLinkOperations(get_admin_client()).validate_for_access(request.args.get('token'))
        return jsonify({'status': 'success', 'link': public_link(link)}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"校验魔法链接失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/upload', methods=['POST'])
def guest_upload():
    """访客上传，占用一次链接额度"""
    try:
        upload = request.files.get('file')
        if not upload or not upload.filename:
            return error_response('No file uploaded', 400)
        result = MagicLinkOperations(get_admin_client()).upload_with_link(
            request.args.get('token'), upload.filename, upload.read())
        return jsonify({
            'status': 'success',
            'file': result['file'],
            'link': public_link(result['link']),
        }), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"访客上传失败: {e}", exc_info=True)
        return error_response('Upload failed', 500)


@magic_links.route('/upload/email', methods=['POST'])
def guest_register_email():
    """访客登记邮箱，文档完成后发送通知"""
    try:
        data = request.get_json(silent=True) or {}
        link = MagicLinkOperations(get_admin_client()).set_guest_email(
            request.args.get('token'), data.get('email'), data.get('name'))
        return jsonify({'status': 'success', 'link': public_link(link)}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"登记访客邮箱失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/upload/files', methods=['GET'])
def guest_files():
    try:
        files = MagicLinkOperations(get_admin_client()).list_files(request.args.get('token'))
        return jsonify({'status': 'success', 'files': files}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"获取访客文件失败: {e}")
        return error_response(str(e), 500)


@magic_links.route('/upload/files/<file_id>', methods=['DELETE'])
def guest_delete_file(file_id):
    try:
        MagicLinkOperations(get_admin_client()).delete_guest_file(request.args.get('token'), file_id)
        return jsonify({'status': 'success'}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"访客删除文件失败: {e}")
        return error_response(str(e), 500)
