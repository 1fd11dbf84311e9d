import re

DOCUMENT_EXTENSIONS = ('.pdf', '.docx', '.doc', '.txt', '.rtf', '.odt')

_COPY_SUFFIX = re.compile(r'\s*\(\d+\)\s*$')
_EXTENSION = re.compile(r'\.[a-z0-9]{1,5}$')


def strip_extensions(name: str) -> str:
    """去除文件扩展名，支持 .docx.pdf 这样的双重扩展名"""
    changed = True
    stripped = False
    while changed:
        changed = False
        for ext in DOCUMENT_EXTENSIONS:
            if name.endswith(ext):
                name = name[:-len(ext)]
                changed = True
                stripped = True
    if not stripped:
        name = _EXTENSION.sub('', name)
    return name


def normalize_filename(filename: str) -> str:
    """
    规范化文件名用于报告匹配

    小写、去扩展名、去掉末尾的 (1) (2) 副本编号、去掉开头的括号、合并空白

    Args:
        filename: 原始文件名

    Returns:
        str: 规范化后的文件名
    """
    if not filename:
        return ''
    result = strip_extensions(filename.lower().strip())
    while _COPY_SUFFIX.search(result):
        result = _COPY_SUFFIX.sub('', result)
    result = re.sub(r'^\[([^\]]+)\]\s*', r'\1 ', result)
    result = re.sub(r'^\(([^)]+)\)\s*', r'\1 ', result)
    return re.sub(r'\s+', ' ', result).strip()
