"""
自动化Worker

每隔固定时间轮询 /extension-api/pending，一次只处理一个文档：
领取 -> 下载 -> 在检测网站上检查 -> 上传报告。任何一步出错都会通过 /error 把文档标记为失败。
"""
from typing import Callable, Dict, Any, Optional
import logging
import threading

from config import EXTENSION_CONFIG, LOGGING_CONFIG
from worker.extension_client import ExtensionApiClient, DocumentClaimedError
from worker.turnitin_checker import TurnitinChecker

logger = logging.getLogger(__name__)


def log_notification(title: str, message: str):
    logger.info(f"[通知] {title}: {message}")


class ExtensionWorker:
    def __init__(self, client: ExtensionApiClient, checker: TurnitinChecker, config: Dict[str, Any] = None,
                 notify: Callable[[str, str], None] = None):
        self.client = client
        self.checker = checker
        self.config = config or EXTENSION_CONFIG
        self.notify = notify or log_notification
        self.is_processing = False
        self.waiting_for_manual_start = False
        self.last_error: Optional[str] = None
        self.processed_count = 0
        self._lock = threading.Lock()

    def can_run(self) -> bool:
        """开关、检测账号、API令牌都就绪才轮询"""
        if not self.config.get('enabled'):
            return False
        if not self.config.get('turnitin_username') or not self.config.get('turnitin_password'):
            return False
        return bool(self.config.get('token'))

    def poll_once(self) -> str:
        """
        轮询一次

        Returns:
            str: disabled / busy / waiting / idle / completed / failed
        """
        if not self.can_run():
            return 'disabled'
        if not self._lock.acquire(blocking=False):
            return 'busy'
        try:
            if self.is_processing:
                return 'busy'
            if self.waiting_for_manual_start:
                return 'waiting'
            self.is_processing = True
            try:
                self.client.heartbeat({'worker': 'plagaiscans-worker', 'processed': self.processed_count})
            except Exception as e:
                logger.warning(f"心跳失败: {e}")

            for document in self.client.pending():
                try:
                    claimed = self.client.download(document['id'])
                except DocumentClaimedError:
                    logger.info(f"文档 {document['id']} 已被领取，跳过")
                    continue
                outcome = self.process_document(claimed)
                if not self.config.get('auto_process_next', True):
                    self.waiting_for_manual_start = True
                return outcome
            return 'idle'
        finally:
            self.is_processing = False
            self._lock.release()

    def process_document(self, claimed: Dict[str, Any]) -> str:
        document = claimed['document']
        document_id = document['id']
        file_name = document.get('file_name') or f'{document_id}.pdf'
        logger.info(f"开始处理文档 {document_id} (第 {document.get('automation_attempt_count', 1)} 次)")
        try:
            content = self.client.fetch_file(claimed['signed_url'])
            result = self.checker.check(file_name, content)
            self.client.upload_report(
                document_id,
                result.similarity_report,
                f'{document_id}_similarity.pdf',
                similarity_percentage=result.similarity_percentage,
                ai_report=result.ai_report,
                ai_percentage=result.ai_percentage,
            )
            self.processed_count += 1
            self.last_error = None
            self.notify('Document completed', f'{file_name}: {result.similarity_percentage}% similarity')
            return 'completed'
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"处理文档 {document_id} 失败: {e}")
            try:
                self.client.report_error(document_id, str(e))
            except Exception as report_error:
                logger.error(f"上报错误失败: {report_error}")
            self.notify('Document failed', f'{file_name}: {e}')
            return 'failed'

    def start_processing_now(self) -> str:
        """单文件模式下手动开始下一个文档"""
        self.waiting_for_manual_start = False
        return self.poll_once()

    def run_forever(self, stop_event: threading.Event = None):
        stop_event = stop_event or threading.Event()
        interval = self.config.get('poll_interval_seconds', 10)
        logger.info(f"Worker启动，轮询间隔 {interval} 秒")
        while not stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"轮询失败: {e}")
            stop_event.wait(interval)


def build_worker(config: Dict[str, Any] = None) -> ExtensionWorker:
    config = config or EXTENSION_CONFIG
    client = ExtensionApiClient(config['api_url'], config.get('token') or '')
    checker = TurnitinChecker(
        config['turnitin_login_url'],
        config.get('turnitin_username'),
        config.get('turnitin_password'),
        folder=config.get('turnitin_folder'),
        headless=config.get('headless', True),
        max_processing_minutes=config.get('max_processing_minutes', 30),
    )
    return ExtensionWorker(client, checker, config)


def main():
    logging.basicConfig(level=LOGGING_CONFIG['level'], format=LOGGING_CONFIG['format'])
    worker = build_worker()
    if not worker.can_run():
        logger.error("Worker未启用或缺少 EXTENSION_TOKEN / TURNITIN_USERNAME / TURNITIN_PASSWORD")
        return
    worker.run_forever()


if __name__ == '__main__':
    main()
