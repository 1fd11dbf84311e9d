from flask import Blueprint, jsonify, request, g
import logging

from apis.auth_api import require_roles
from apis.responses import error_response, workflow_error_response
from db.credit_operations import CreditOperations
from db.document_operations import DocumentOperations, report_field
from db.errors import WorkflowError
from db.supabase_client import get_admin_client
from schemas import REPORT_KINDS, ROLE_ADMIN, ROLE_STAFF, SCAN_FULL

logger = logging.getLogger(__name__)

documents = Blueprint('documents', __name__, url_prefix='/api')

STAFF_ROLES = (ROLE_ADMIN, ROLE_STAFF)


def parse_percentage(value):
    """表单中的百分比，空值返回None，超出0-100抛出ValueError"""
    if value is None or value == '':
        return None
    number = float(value)
    if number < 0 or number > 100:
        raise ValueError('Percentage must be between 0 and 100')
    return number


def request_data() -> dict:
    if request.is_json:
        return request.get_json() or {}
    return request.form.to_dict()


@documents.route('/documents', methods=['POST'])
@require_roles()
def upload_document():
    """客户上传文档，消耗1积分"""
    try:
        upload = request.files.get('file')
        if not upload or not upload.filename:
            return error_response('No file uploaded', 400)
        scan_type = request.form.get('scan_type', SCAN_FULL)
        document = DocumentOperations(get_admin_client()).upload_document(
            g.user_id, upload.filename, upload.read(), scan_type)
        return jsonify({'status': 'success', 'document': document}), 201
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"上传文档失败: {e}", exc_info=True)
        return error_response('Failed to upload document', 500)


@documents.route('/documents', methods=['GET'])
@require_roles()
def list_documents():
    """客户只能看到自己的文档，员工和管理员看到全部"""
    try:
        user_id = None if g.role in STAFF_ROLES else g.user_id
        items = DocumentOperations(get_admin_client()).list_documents(
            user_id=user_id,
            status=request.args.get('status'),
            limit=int(request.args.get('limit', 100)),
        )
        return jsonify({'status': 'success', 'documents': items}), 200
    except Exception as e:
        logger.error(f"获取文档列表失败: {e}")
        return error_response(str(e), 500)


@documents.route('/documents/<document_id>', methods=['GET'])
@require_roles()
def get_document(document_id):
    try:
        document = DocumentOperations(get_admin_client()).get_document(document_id)
        if not document or (g.role not in STAFF_ROLES and document.get('user_id') != g.user_id):
            return error_response('Document not found', 404)
        return jsonify({'status': 'success', 'document': document}), 200
    except Exception as e:
        logger.error(f"获取文档失败: {e}")
        return error_response(str(e), 500)


@documents.route('/documents/<document_id>/status', methods=['POST'])
@require_roles(*STAFF_ROLES)
def update_document_status(document_id):
    """
    员工/管理员修改文档：状态、报告文件、百分比、备注

    报告以 similarity_report / ai_report 文件上传；clear_<kind>_report=true 删除已有报告
    """
    try:
        data = request_data()
        status = data.get('status')
        if not status:
            return error_response('Status is required', 400)

        doc_ops = DocumentOperations(get_admin_client())
        current = doc_ops.get_document(document_id)
        if not current:
            return error_response('Document not found', 404)

        updates = {}
        new_reports = {}
        stale_paths = []
        for kind in REPORT_KINDS:
            field = report_field(kind)
            upload = request.files.get(f'{kind}_report')
            if upload and upload.filename:
                path = doc_ops.report_path(current, kind)
                new_reports[path] = upload.read()
                updates[field] = path
                if current.get(field) != path:
                    stale_paths.append(current.get(field))
            elif str(data.get(f'clear_{kind}_report', '')).lower() == 'true':
                updates.update(doc_ops.clear_report(kind))
                stale_paths.append(current.get(field))
            if f'{kind}_percentage' in data:
                updates[f'{kind}_percentage'] = parse_percentage(data.get(f'{kind}_percentage'))
        if 'remarks' in data:
            updates['remarks'] = data.get('remarks') or None

        # 先校验，通过后才写入或删除存储中的报告
        doc_ops.validate_update(current, status, g.role, updates)
        for path, content in new_reports.items():
            doc_ops.store_report(path, content)
        document = doc_ops.update_status(
            document_id, status, g.user_id, g.role, updates,
            error_message=data.get('error_message'),
        )
        doc_ops.remove_report_files(stale_paths)
        return jsonify({'status': 'success', 'document': document}), 200
    except ValueError as e:
        return error_response(str(e), 400)
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"更新文档状态失败: {e}", exc_info=True)
        return error_response('Failed to update document', 500)


@documents.route('/documents/<document_id>/claim', methods=['POST'])
@require_roles(*STAFF_ROLES)
def claim_document(document_id):
    try:
        document = DocumentOperations(get_admin_client()).claim_document(document_id, g.user_id)
        return jsonify({'status': 'success', 'document': document}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"领取文档失败: {e}")
        return error_response(str(e), 500)


@documents.route('/documents/<document_id>/release', methods=['POST'])
@require_roles(*STAFF_ROLES)
def release_document(document_id):
    try:
        document = DocumentOperations(get_admin_client()).release_document(document_id, g.user_id, g.role)
        return jsonify({'status': 'success', 'document': document}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"释放文档失败: {e}")
        return error_response(str(e), 500)


@documents.route('/documents/<document_id>', methods=['DELETE'])
@require_roles()
def delete_document(document_id):
    """客户删除自己的文档；管理员可取消文档并退还积分"""
    try:
        doc_ops = DocumentOperations(get_admin_client())
        document = doc_ops.get_document(document_id)
        if not document:
            return error_response('Document not found', 404)

        data = request.get_json(silent=True) or {}
        if g.role == ROLE_ADMIN:
            result = doc_ops.delete_document(
                document_id, g.user_id, 'admin',
                reason=data.get('reason'),
                refund=bool(data.get('refund')),
            )
        elif document.get('user_id') == g.user_id:
            result = doc_ops.delete_document(document_id, g.user_id, 'customer', reason=data.get('reason'))
        else:
            return error_response('Document not found', 404)
        return jsonify({'status': 'success', 'refunded': result['refunded']}), 200
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"删除文档失败: {e}")
        return error_response(str(e), 500)


@documents.route('/admin/credits/<user_id>', methods=['POST'])
@require_roles(ROLE_ADMIN)
def set_credit_balance(user_id):
    """管理员修改用户余额"""
    try:
        data = request.get_json() or {}
        if 'balance' not in data:
            return error_response('balance is required', 400)
        result = CreditOperations(get_admin_client()).set_balance(
            user_id, int(data['balance']), data.get('credit_type', SCAN_FULL), g.user_id)
        return jsonify({'status': 'success', **result}), 200
    except ValueError:
        return error_response('balance must be an integer', 400)
    except WorkflowError as e:
        return workflow_error_response(e)
    except Exception as e:
        logger.error(f"修改余额失败: {e}")
        return error_response(str(e), 500)
