import html
import re

from config import SENDPULSE_CONFIG


def escape(text) -> str:
    return html.escape(str(text or ''), quote=True)


def message_to_html(message: str) -> str:
    """纯文本消息转义后按段落换行"""
    paragraphs = [p.strip() for p in escape(message).split('\n\n') if p.strip()]
    return ''.join(
        f'<p style="margin: 0 0 16px 0; color: #374151; line-height: 1.6;">{p.replace(chr(10), "<br>")}</p>'
        for p in paragraphs
    )


def footer(unsubscribe_url: str = None) -> str:
    site_url = SENDPULSE_CONFIG['site_url']
    unsubscribe = ''
    if unsubscribe_url:
        unsubscribe = (
            f'<br><br><a href="{escape(unsubscribe_url)}" style="color: #9ca3af; text-decoration: underline; '
            f'font-size: 11px;">Unsubscribe from promotional emails</a>'
        )
    return (
        '<div style="margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb;">'
        '<p style="color: #6b7280; text-align: center; margin: 0 0 10px 0; font-size: 13px;">'
        'Regards,<br><strong>Plagaiscans Support Team</strong></p>'
        f'<p style="color: #9ca3af; text-align: center; margin: 0; font-size: 12px;">'
        f'<a href="{escape(site_url)}" style="color: #6366f1; text-decoration: none;">plagaiscans.com</a>'
        f'{unsubscribe}</p></div>'
    )


def render_email(title: str, message: str, cta_text: str = None, cta_url: str = None,
                 unsubscribe_url: str = None) -> str:
    """
    生成邮件HTML，所有用户输入都会被转义

    Args:
        title: 标题
        message: 纯文本正文
        cta_text: 按钮文字
        cta_url: 按钮链接
        unsubscribe_url: 退订链接，推广邮件需要

    Returns:
        str: 完整HTML
    """
    button = ''
    if cta_text and cta_url:
        button = (
            '<div style="text-align: center; margin: 30px 0;">'
            f'<a href="{escape(cta_url)}" style="background: #6366f1; color: #ffffff; padding: 12px 28px; '
            f'border-radius: 6px; text-decoration: none; font-weight: 600;">{escape(cta_text)}</a></div>'
        )
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8">'
        '<meta name="viewport" content="width=device-width, initial-scale=1.0"></head>'
        '<body style="font-family: Arial, sans-serif; background: #f9fafb; margin: 0; padding: 20px;">'
        '<div style="max-width: 600px; margin: 0 auto; background: #ffffff; border-radius: 8px; padding: 32px;">'
        f'<h1 style="color: #111827; font-size: 22px; margin: 0 0 24px 0;">{escape(title)}</h1>'
        f'{message_to_html(message)}{button}{footer(unsubscribe_url)}'
        '</div></body></html>'
    )


def html_to_text(content: str) -> str:
    """生成邮件的纯文本版本"""
    text = re.sub(r'<(script|style)[^>]*>.*?</\1>', '', content, flags=re.S | re.I)
    text = re.sub(r'<br\s*/?>|</p>|</div>|</h\d>', '\n', text, flags=re.I)
    text = re.sub(r'<[^>]+>', '', text)
    text = html.unescape(text)
    text = re.sub(r'[ \t]+', ' ', text)
    return re.sub(r'\n\s*\n+', '\n\n', text).strip()
