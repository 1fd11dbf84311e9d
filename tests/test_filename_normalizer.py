from report_utils.filename_normalizer import normalize_filename


def test_lowercases_and_strips_extension():
    assert normalize_filename('My Essay.DOCX') == 'my essay'


def test_strips_double_document_extensions():
    assert normalize_filename('Thesis Final.docx.pdf') == 'thesis final'


def test_strips_repeated_copy_suffixes():
    assert normalize_filename('report (1) (2).pdf') == 'report'


def test_collapses_whitespace():
    assert normalize_filename('  chapter   one \t draft.pdf') == 'chapter one draft'


def test_unwraps_leading_brackets():
    assert normalize_filename('[Guest] essay.pdf') == 'guest essay'


def test_unknown_extension_is_removed_once():
    assert normalize_filename('notes.md') == 'notes'


def test_keeps_inner_dots():
    assert normalize_filename('v1.2 summary.pdf') == 'v1.2 summary'


def test_empty_name():
    assert normalize_filename('') == ''
