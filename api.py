from flask import Flask, jsonify
from flask_cors import CORS
from datetime import datetime
import logging
from config import FLASK_CONFIG, LOGGING_CONFIG, DOCUMENT_CONFIG, PADDLE_CONFIG, UNSUBSCRIBE_CONFIG

# 配置日志
logging.basicConfig(level=LOGGING_CONFIG['level'], format=LOGGING_CONFIG['format'])

# 创建Flask应用
app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = FLASK_CONFIG['max_upload_mb'] * 1024 * 1024
CORS(app)

from apis.auth_api import auth_bp
from apis.document_api import documents
from apis.magic_link_api import magic_links
from apis.extension_api import extension, extension_tokens
from apis.webhook_api import webhooks
from apis.bulk_report_api import bulk_reports
from apis.admin_email_api import admin_email
from apis.support_api import support
from apis.maintenance_api import maintenance

app.register_blueprint(auth_bp)
app.register_blueprint(documents)
app.register_blueprint(magic_links)
app.register_blueprint(extension)
app.register_blueprint(extension_tokens)
app.register_blueprint(webhooks)
app.register_blueprint(bulk_reports)
app.register_blueprint(admin_email)
app.register_blueprint(support)
app.register_blueprint(maintenance)

logger = logging.getLogger(__name__)


def check_config() -> list:
    """启动时检查会让功能静默失效的空配置，返回缺失的环境变量名"""
    missing = []
    if not UNSUBSCRIBE_CONFIG.get('secret'):
        missing.append('UNSUBSCRIBE_SECRET')
        logger.warning("UNSUBSCRIBE_SECRET 未配置，所有退订链接都会校验失败")
    if not PADDLE_CONFIG.get('webhook_secret'):
        missing.append('PADDLE_WEBHOOK_SECRET')
        logger.warning("PADDLE_WEBHOOK_SECRET 未配置，Paddle webhook 将全部被拒绝")
    if not DOCUMENT_CONFIG.get('maintenance_key'):
        missing.append('MAINTENANCE_KEY')
        logger.warning("MAINTENANCE_KEY 未配置，维护接口不可用")
    return missing


check_config()


@app.route('/api/health', methods=['GET'])
def health_check():
    """基础健康检查"""
    return jsonify({
        'status': 'healthy',
        'message': 'Welcome to Plagaiscans API',
        'timestamp': datetime.now().isoformat()
    })


def main():
    app.run(host=FLASK_CONFIG.get('host'), port=FLASK_CONFIG.get('port'), debug=FLASK_CONFIG.get('debug'))


if __name__ == '__main__':
    main()
