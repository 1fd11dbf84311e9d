from supabase import create_client, Client
from config import SUPABASE_CONFIG
import logging

logger = logging.getLogger(__name__)

_admin_client = None


class SupabaseInitializer:
    def __init__(self, supabase_url=None, ANON_KEY=None, SERVICE_ROLE_KEY=None):
        self.supabase_url = supabase_url if supabase_url else SUPABASE_CONFIG.get('url')
        self.ANON_KEY = ANON_KEY if ANON_KEY else SUPABASE_CONFIG.get('key')
        self.SERVICE_ROLE_KEY = SERVICE_ROLE_KEY if SERVICE_ROLE_KEY else SUPABASE_CONFIG.get('service_key')

        # 用户登录：ANON_KEY
        # 服务端读写（扣费、Webhook、存储）：SERVICE_ROLE_KEY
        self.supabase: Client = create_client(self.supabase_url, self.ANON_KEY)
        self.supabase_admin: Client = create_client(self.supabase_url, self.SERVICE_ROLE_KEY)
        logger.info(f"Supabase client initialized with URL: {self.supabase_url}")


def get_admin_client():
    """获取服务端使用的Supabase客户端（首次调用时创建）"""
    global _admin_client
    if _admin_client is None:
        _admin_client = SupabaseInitializer().supabase_admin
    return _admin_client


def set_admin_client(client):
    """替换服务端客户端，测试时注入内存实现"""
    global _admin_client
    _admin_client = client
