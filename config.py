# 配置文件
import os
from dotenv import load_dotenv

env_path = os.getenv('PLAGAISCANS_ENV_FILE', '.env')
load_dotenv(env_path)

SUPABASE_CONFIG = {
    'url': os.getenv('SUPABASE_URL'),
    'key': os.getenv('SUPABASE_ANON_KEY'),
    'service_key': os.getenv('SUPABASE_SERVICE_ROLE_KEY'),
    'documents_bucket_name': 'documents',
    'reports_bucket_name': 'reports',
    'magic_bucket_name': 'magic-uploads',
}

# Flask配置
FLASK_CONFIG = {
    'host': os.getenv('FLASK_HOST', '0.0.0.0'),
    'port': int(os.getenv('FLASK_PORT', 5000)),
    'debug': os.getenv('FLASK_DEBUG', 'False').lower() == 'true',
    'max_upload_mb': int(os.getenv('MAX_UPLOAD_MB', 50)),
}

# 日志配置
LOGGING_CONFIG = {
    'level': os.getenv('LOG_LEVEL', 'INFO'),
    'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
}

# Paddle配置
PADDLE_CONFIG = {
    'webhook_secret': os.getenv('PADDLE_WEBHOOK_SECRET'),
    'default_validity_days': int(os.getenv('CREDIT_VALIDITY_DAYS', 365)),
}

# Viva配置，验证密钥保存在settings表中
VIVA_CONFIG = {
    'verification_setting_key': 'viva_webhook_verification_key',
    'success_event_id': 1796,
    'failed_event_id': 1798,
}

# SendPulse邮件配置
SENDPULSE_CONFIG = {
    'api_key': os.getenv('SENDPULSE_API_KEY'),
    'api_secret': os.getenv('SENDPULSE_API_SECRET'),
    'base_url': os.getenv('SENDPULSE_BASE_URL', 'https://api.sendpulse.com'),
    'from_email': os.getenv('SENDPULSE_FROM_EMAIL', 'noreply@plagaiscans.com'),
    'from_name': os.getenv('SENDPULSE_FROM_NAME', 'Plagaiscans'),
    'site_url': os.getenv('SITE_URL', 'https://plagaiscans.com'),
    'api_url': os.getenv('API_BASE_URL', 'https://api.plagaiscans.com'),
    'timeout': 30,
}

# 邮件预热配置
WARMUP_CONFIG = {
    'initial_daily_limit': 20,
    'increment_per_day': 10,
    'max_daily_limit': 500,
    'send_delay_seconds': float(os.getenv('EMAIL_SEND_DELAY', 0.5)),
}

# Web Push配置
PUSH_CONFIG = {
    'vapid_public_key': os.getenv('VAPID_PUBLIC_KEY'),
    'vapid_private_key': os.getenv('VAPID_PRIVATE_KEY'),
    'vapid_subject': os.getenv('VAPID_SUBJECT', 'mailto:support@plagaiscans.com'),
    'icon': '/pwa-icon-192.png',
    'ttl': 86400,
}

# 文档处理配置
DOCUMENT_CONFIG = {
    'processing_timeout_minutes': int(os.getenv('PROCESSING_TIMEOUT_MINUTES', 30)),
    'signed_url_expires_in': 3600,
    'magic_link_default_hours': 30 * 24,
    'pending_batch_size': 10,
    'maintenance_key': os.getenv('MAINTENANCE_KEY'),
}

# 退订链接签名
UNSUBSCRIBE_CONFIG = {
    'secret': os.getenv('UNSUBSCRIBE_SECRET', ''),
}

# 自动化Worker配置
EXTENSION_CONFIG = {
    'api_url': os.getenv('EXTENSION_API_URL', 'http://127.0.0.1:5000/extension-api'),
    'token': os.getenv('EXTENSION_TOKEN'),
    'enabled': os.getenv('EXTENSION_ENABLED', 'True').lower() == 'true',
    'poll_interval_seconds': int(os.getenv('EXTENSION_POLL_INTERVAL', 10)),
    'max_processing_minutes': int(os.getenv('EXTENSION_MAX_PROCESSING_MINUTES', 30)),
    'auto_process_next': os.getenv('EXTENSION_AUTO_PROCESS_NEXT', 'True').lower() == 'true',
    'turnitin_login_url': os.getenv('TURNITIN_LOGIN_URL', 'https://www.turnitin.com/login_page.asp'),
    'turnitin_username': os.getenv('TURNITIN_USERNAME'),
    'turnitin_password': os.getenv('TURNITIN_PASSWORD'),
    'turnitin_folder': os.getenv('TURNITIN_FOLDER'),
    'headless': os.getenv('TURNITIN_HEADLESS', 'True').lower() == 'true',
}
