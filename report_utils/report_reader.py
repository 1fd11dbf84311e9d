import re
import fitz
import logging
from io import BytesIO
from typing import List, Optional

from schemas import REPORT_SIMILARITY, REPORT_AI

logger = logging.getLogger(__name__)

REPORT_UNKNOWN = 'unknown'

SIMILARITY_INDICATORS = ('overall similarity', 'match groups', 'integrity overview', 'similarity index')
AI_INDICATORS = ('detected as ai', 'ai writing overview', 'detection groups', 'ai writing detection')

# 第2页上的相似度写法
PAGE_TWO_PATTERNS = [
    re.compile(r'(\d{1,3})\s*%\s*overall\s*similarity'),
    re.compile(r'overall\s*similarity[:\s]*(\d{1,3})\s*%'),
    re.compile(r'similarity\s*index[:\s]*(\d{1,3})\s*%'),
]

# 旧版 originality report 的写法，出现在报告末尾
ORIGINALITY_PATTERNS = [
    re.compile(r'(\d{1,3})\s*%\s*similarity\s*index'),
    re.compile(r'similarity\s*index[:\s]*(\d{1,3})\s*%'),
    re.compile(r'(\d{1,3})\s*%\s*overall\s*similarity'),
]

AI_PATTERN = re.compile(r'(\d{1,3}|\*)\s*%\s*detected\s*as\s*ai')

TAIL_PAGES = 20


class ReportReader:
    def __init__(self, fp=None, content=None):
        """
            fp: 报告PDF路径
            content: 报告PDF的字节内容
        """
        self.fp = fp
        self.content = content
        self._pages = None

    def read_pages(self) -> List[str]:
        """
            读取每一页的文本（小写、合并空白）
            return: 每页文本的列表
        """
        if self._pages is not None:
            return self._pages
        if self.content is not None:
            doc = fitz.open(stream=BytesIO(self.content), filetype="pdf")
        else:
            doc = fitz.open(self.fp)
        pages = []
        for page in doc:
            text = page.get_text("text")
            pages.append(re.sub(r'\s+', ' ', text.lower()))
        doc.close()
        self._pages = pages
        return pages

    def _page(self, index: int) -> str:
        pages = self.read_pages()
        return pages[index] if 0 <= index < len(pages) else ''

    def classify(self) -> str:
        """根据第2页（缺失时用全文）的关键词判断报告类型"""
        text = self._page(1) or ' '.join(self.read_pages())
        if any(word in text for word in AI_INDICATORS):
            return REPORT_AI
        if any(word in text for word in SIMILARITY_INDICATORS):
            return REPORT_SIMILARITY
        return REPORT_UNKNOWN

    def extract_similarity_percentage(self) -> Optional[float]:
        """
            提取相似度百分比
            先匹配第2页，再匹配最后20页中包含 originality report 的页面
            return: 0-100之间的百分比，找不到时返回None
        """
        value = _first_percentage(self._page(1), PAGE_TWO_PATTERNS)
        if value is not None:
            return value
        pages = self.read_pages()
        for text in pages[-TAIL_PAGES:]:
            if 'originality report' not in text:
                continue
            value = _first_percentage(text, ORIGINALITY_PATTERNS)
            if value is not None:
                return value
        return None

    def extract_ai_percentage(self) -> Optional[float]:
        """提取AI检测百分比，报告中显示为 *% 时返回None"""
        for text in [self._page(1)] + self.read_pages():
            match = AI_PATTERN.search(text)
            if not match:
                continue
            if match.group(1) == '*':
                return None
            value = float(match.group(1))
            if 0 <= value <= 100:
                return value
        return None

    def summary(self) -> dict:
        """分类并提取对应的百分比"""
        try:
            report_type = self.classify()
        except Exception as e:
            logger.error(f"读取报告PDF失败: {e}")
            return {'report_type': REPORT_UNKNOWN, 'percentage': None}
        if report_type == REPORT_SIMILARITY:
            percentage = self.extract_similarity_percentage()
        elif report_type == REPORT_AI:
            percentage = self.extract_ai_percentage()
        else:
            percentage = None
        return {'report_type': report_type, 'percentage': percentage}


def _first_percentage(text: str, patterns) -> Optional[float]:
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = float(match.group(1))
            if 0 <= value <= 100:
                return value
    return None
