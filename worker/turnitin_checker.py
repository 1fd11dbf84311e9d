from typing import Optional, Tuple
from dataclasses import dataclass
import logging
import os
import re
import time

from playwright.sync_api import sync_playwright

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 3
RELOAD_EVERY_CHECKS = 20

_PERCENT = re.compile(r'(\d{1,3})\s*%')


class CheckerTimeoutError(Exception):
    pass


@dataclass
class CheckResult:
    similarity_percentage: Optional[float]
    ai_percentage: Optional[float]
    similarity_report: bytes
    ai_report: Optional[bytes] = None


def parse_row_scores(text: str) -> Tuple[Optional[float], Optional[float], bool]:
    """
    从文件列表的一行中解析分数

    第一个百分比是相似度，第二个是AI；出现 processing / pending / *% 说明还在处理

    Returns:
        tuple: (相似度, AI, 是否就绪)
    """
    lowered = (text or '').lower()
    values = [float(v) for v in _PERCENT.findall(lowered) if 0 <= float(v) <= 100]
    similarity = values[0] if values else None
    ai = values[1] if len(values) > 1 else None
    processing = 'processing' in lowered or 'pending' in lowered or '*%' in lowered
    return similarity, ai, similarity is not None and not processing


def document_title(file_name: str) -> str:
    return os.path.splitext(file_name)[0]


class TurnitinChecker:
    """用Playwright驱动检测网站：登录、进入文件夹、上传、等待分数、下载报告"""

    def __init__(self, login_url: str, username: str, password: str, folder: str = None,
                 headless: bool = True, max_processing_minutes: int = 30):
        self.login_url = login_url
        self.username = username
        self.password = password
        self.folder = folder
        self.headless = headless
        self.max_processing_seconds = max_processing_minutes * 60

    def check(self, file_name: str, content: bytes) -> CheckResult:
        deadline = time.monotonic() + self.max_processing_seconds
        title = document_title(file_name)
        with sync_playwright() as p:
            browser = p.chromium.launch(headless=self.headless)
            context = browser.new_context(accept_downloads=True)
            page = context.new_page()
            page.set_default_timeout(30000)
            try:
                self._login(page)
                self._open_folder(page)
                self._upload(page, file_name, title, content)
                row, similarity, ai = self._wait_for_scores(page, title, deadline)
                report = self._download_report(page, row, 'similarity')
                ai_report = None
                if ai is not None:
                    try:
                        ai_report = self._download_report(page, row, 'ai')
                    except Exception as e:
                        logger.warning(f"下载AI报告失败: {e}")
                return CheckResult(similarity, ai, report, ai_report)
            finally:
                browser.close()

    def _login(self, page):
        page.goto(self.login_url)
        if not page.query_selector('input[type="password"]'):
            return
        username = page.query_selector('input[name="username"]') or page.query_selector('#username') \
            or page.query_selector('input[type="email"]')
        if not username:
            raise RuntimeError('Login form not found')
        username.fill(self.username)
        page.fill('input[type="password"]', self.password)
        page.press('input[type="password"]', 'Enter')
        page.wait_for_load_state('networkidle')
        if page.query_selector('input[type="password"]'):
            raise RuntimeError('Login failed, check the stored credentials')

    def _open_folder(self, page):
        if not self.folder:
            return
        page.get_by_text(self.folder, exact=False).first.click()
        page.wait_for_load_state('networkidle')

    def _upload(self, page, file_name: str, title: str, content: bytes):
        upload_button = page.get_by_role('button', name=re.compile('upload|submit', re.I)).first
        upload_button.click()
        page.set_input_files('input[type="file"]', files=[{
            'name': file_name,
            'mimeType': 'application/octet-stream',
            'buffer': content,
        }])
        title_input = page.query_selector('input[name="title"], #title, input[placeholder*="itle"]')
        if title_input:
            title_input.fill(title)
        page.get_by_role('button', name=re.compile('upload|submit|confirm', re.I)).last.click()
        page.wait_for_load_state('networkidle')
        logger.info(f"已上传 {file_name}")

    def _find_row(self, page, title: str):
        needle = title.lower()
        for row in page.query_selector_all('tr, [role="row"]'):
            if needle in (row.inner_text() or '').lower():
                return row
        return None

    def _wait_for_scores(self, page, title: str, deadline: float):
        checks = 0
        while time.monotonic() < deadline:
            checks += 1
            row = self._find_row(page, title)
            if row:
                similarity, ai, ready = parse_row_scores(row.inner_text())
                if ready:
                    logger.info(f"分数就绪: similarity={similarity}%, ai={ai}")
                    return row, similarity, ai
            if checks % RELOAD_EVERY_CHECKS == 0:
                page.reload()
                page.wait_for_load_state('networkidle')
            page.wait_for_timeout(CHECK_INTERVAL_SECONDS * 1000)
        raise CheckerTimeoutError(f'Timed out waiting for the report of "{title}"')

    def _download_report(self, page, row, kind: str) -> bytes:
        pattern = 'similarity|report' if kind == 'similarity' else 'ai'
        link = row.query_selector(f'a[href*="{kind}"]')
        if link is None and kind == 'similarity':
            link = row.query_selector('a[href*="report"]')
        if link is None:
            link = page.get_by_role('link', name=re.compile(pattern, re.I)).first
        with page.expect_download() as download_info:
            link.click()
        path = download_info.value.path()
        with open(path, 'rb') as f:
            return f.read()
