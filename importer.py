"""Bulk question import from CSV files or spreadsheet paste.

The master template has one row per question:

    Section, Type, Question_EN, Question_PA, OptionA_EN, OptionA_PA, ...,
    OptionD_PA, CorrectAnswer, Marks, NegativeMarks, Explanation_EN,
    Explanation_PA, ParentRow

Headers are matched loosely so files exported from other tools still load.
When the header row is not recognised the columns are read by position.
"""
import csv
import io
import re


IMPORTABLE_TYPES = ("mcq_single", "mcq_multiple", "fill_blank", "paragraph")
NO_ANSWER_TYPES = ("paragraph", "fill_blank")
OPTION_KEYS = ("a", "b", "c", "d")

DEFAULT_MARKS = 4
DEFAULT_NEGATIVE_MARKS = 0

TEMPLATE_HEADERS = [
    "Section Name (Must match exactly)",
    "Type",
    "Question_EN",
    "Question_PA",
    "OptionA_EN",
    "OptionA_PA",
    "OptionB_EN",
    "OptionB_PA",
    "OptionC_EN",
    "OptionC_PA",
    "OptionD_EN",
    "OptionD_PA",
    "CorrectAnswer",
    "Marks",
    "NegativeMarks",
    "Explanation_EN",
    "Explanation_PA",
    "ParentRow",
]

# positional layout of the master template
POSITIONAL_FIELDS = [
    "section", "type", "textEn", "textPa",
    "optionAEn", "optionAPa", "optionBEn", "optionBPa",
    "optionCEn", "optionCPa", "optionDEn", "optionDPa",
    "correctAnswer", "marks", "negativeMarks",
    "explanationEn", "explanationPa", "parentRow",
]
SHIFTED_FIELDS = ("marks", "negativeMarks", "explanationEn", "explanationPa", "parentRow")

FIELD_ALIASES = {
    "section": ("section", "sectionname", "sectionnamemustmatchexactly", "subject"),
    "type": ("type", "questiontype", "qtype"),
    "textEn": ("questionen", "question", "questionenglish", "texten", "text", "qen"),
    "textPa": ("questionpa", "questionpunjabi", "textpa", "qpa"),
    "correctAnswer": ("correctanswer", "correct", "answer", "answerkey", "key"),
    "marks": ("marks", "mark", "points", "score"),
    "negativeMarks": ("negativemarks", "negmarks", "negative", "negativemark", "penalty"),
    "explanationEn": ("explanationen", "explanation", "explanationenglish", "solution", "explen"),
    "explanationPa": ("explanationpa", "explanationpunjabi", "explpa"),
    "parentRow": ("parentrow", "parent", "parentquestion"),
}
for _key in OPTION_KEYS:
    _up = _key.upper()
    FIELD_ALIASES[f"option{_up}En"] = (f"option{_key}en", f"option{_key}", f"option{_key}english", f"{_key}en", f"opt{_key}")
    FIELD_ALIASES[f"option{_up}Pa"] = (f"option{_key}pa", f"option{_key}punjabi", f"{_key}pa", f"opt{_key}pa")

_ALIAS_LOOKUP = {alias: field for field, aliases in FIELD_ALIASES.items() for alias in aliases}

_MATH_RULES = [
    (re.compile(r"\^\{([^}]+)\}"), r"<sup>\1</sup>"),
    (re.compile(r"_\{([^}]+)\}"), r"<sub>\1</sub>"),
    (re.compile(r"\^\(([^)]+)\)"), r"<sup>\1</sup>"),
    (re.compile(r"_\(([^)]+)\)"), r"<sub>\1</sub>"),
    (re.compile(r"\^(\d+)"), r"<sup>\1</sup>"),
    (re.compile(r"_(\d+)"), r"<sub>\1</sub>"),
]
_TEXT_FIELDS = {
    "textEn", "textPa", "explanationEn", "explanationPa",
    *(f"option{k.upper()}{lang}" for k in OPTION_KEYS for lang in ("En", "Pa")),
}


def format_math_text(text):
    """Turn caret/underscore notation (x^2, H_{2}O) into <sup>/<sub> markup."""
    if not text:
        return ""
    for pattern, repl in _MATH_RULES:
        text = pattern.sub(repl, text)
    return text

def detect_delimiter(header_line):
    return "\t" if header_line.count("\t") > header_line.count(",") else ","

def _norm_header(name):
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())

def _match_headers(cells):
    """Map column index -> field name, or None when the header is not ours."""
    mapping = {}
    for idx, cell in enumerate(cells):
        key = _norm_header(cell)
        field = _ALIAS_LOOKUP.get(key)
        if field is None and key.startswith("section"):
            field = "section"
        if field and field not in mapping.values():
            mapping[idx] = field
    fields = set(mapping.values())
    if not ({"textEn", "textPa"} & fields) or len(fields) < 3:
        return None
    return mapping

def _split_line(line, delimiter):
    try:
        cells = next(csv.reader([line], delimiter=delimiter))
    except (csv.Error, StopIteration):
        cells = line.split(delimiter)
    return [c.strip() for c in cells]

def to_int(raw, default):
    raw = "" if raw is None else str(raw).strip()
    if not raw:
        return default
    try:
        return int(float(raw))
    except ValueError:
        return default

def _match_section(name, sections):
    lowered = name.lower()
    for section in sections:
        label = section.name or {}
        if (label.get("en") or "").lower() == lowered or label.get("pa") == name:
            return section
    return None

def _positional_record(cells):
    offset = 1 if len(cells) > 19 and len(cells) > 13 and cells[13] == "" else 0
    record = {}
    for idx, field in enumerate(POSITIONAL_FIELDS):
        pos = idx + offset if field in SHIFTED_FIELDS else idx
        record[field] = cells[pos] if pos < len(cells) else ""
    return record

def _mapped_record(cells, mapping):
    record = {field: "" for field in POSITIONAL_FIELDS}
    for idx, field in mapping.items():
        if idx < len(cells):
            record[field] = cells[idx]
    return record

def _build_row(record, line_no, sections, default_section, has_section_column):
    section_name = (record.get("section") or "").strip()
    section = None
    if section_name:
        section = _match_section(section_name, sections)
    elif not has_section_column and default_section is not None:
        section = default_section

    row = {
        "row": line_no,
        "section": section.id if section else None,
        "sectionName": section_name or (section.name.get("en") if section else ""),
        "type": (record.get("type") or "mcq_single").strip().lower(),
        "correctAnswer": (record.get("correctAnswer") or "").strip().lower(),
        "marks": to_int(record.get("marks"), DEFAULT_MARKS),
        "negativeMarks": to_int(record.get("negativeMarks"), DEFAULT_NEGATIVE_MARKS),
        "parentRow": to_int(record.get("parentRow"), None),
        "error": None,
    }
    for field in _TEXT_FIELDS:
        row[field] = format_math_text(record.get(field) or "")

    if section is None and not section_name:
        row["error"] = "Section name missing"
    elif section is None:
        row["error"] = f'Invalid Section: "{section_name}"'
    elif not row["textEn"] and not row["textPa"]:
        row["error"] = "Question text missing"
    elif row["type"] not in IMPORTABLE_TYPES:
        row["error"] = "Invalid type"
    elif row["type"] not in NO_ANSWER_TYPES and not row["correctAnswer"]:
        row["error"] = "Answer missing"
    return row

def parse_import_text(text, sections, default_section=None):
    """Parse an uploaded file or pasted block into preview rows.

    ``sections`` are the exam's Section rows; ``default_section`` is used when
    the file carries no section column at all (section-level import).
    Raises ValueError when there is no data row.
    """
    text = (text or "").lstrip("\ufeff")
    lines = [line.rstrip("\r") for line in text.split("\n") if line.strip()]
    if len(lines) < 2:
        raise ValueError("File is empty")

    delimiter = detect_delimiter(lines[0])
    header = _split_line(lines[0], delimiter)
    mapping = _match_headers(header)
    has_section_column = mapping is None or "section" in mapping.values()

    rows = []
    for index, line in enumerate(lines[1:]):
        cells = _split_line(line, delimiter)
        record = _mapped_record(cells, mapping) if mapping else _positional_record(cells)
        rows.append(_build_row(record, index + 2, sections, default_section, has_section_column))
    return rows

def row_options(row):
    """Non-empty options of a parsed row as [{"key", "text": {"en","pa"}}]."""
    options = []
    for key in OPTION_KEYS:
        up = key.upper()
        en = row.get(f"option{up}En") or ""
        pa = row.get(f"option{up}Pa") or ""
        if en or pa:
            options.append({"key": key, "text": {"en": en, "pa": pa}})
    return options

def row_correct_answer(row):
    raw = (row.get("correctAnswer") or "").strip().lower()
    if not raw:
        return []
    if row.get("type") == "mcq_multiple":
        return [part.strip() for part in re.split(r"[,;|]", raw) if part.strip()]
    return [raw]

def build_template_csv(sections):
    sample_section = "Physics"
    if sections:
        sample_section = (sections[0].name or {}).get("en") or sample_section
    sample = [
        sample_section, "mcq_single",
        "What is the speed of light?", "ਪ੍ਰਕਾਸ਼ ਦੀ ਗਤੀ ਕੀ ਹੈ?",
        "3x10^8 m/s", "3x10^8 m/s",
        "3x10^6 m/s", "3x10^6 m/s",
        "3x10^5 km/s", "3x10^5 km/s",
        "Infinite", "ਅਨੰਤ",
        "a", "4", "1",
        "Speed of light in vacuum", "ਵੈਕਿਊਮ ਵਿੱਚ ਪ੍ਰਕਾਸ਼ ਦੀ ਗਤੀ",
        "",
    ]
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(TEMPLATE_HEADERS)
    writer.writerow(sample)
    return "\ufeff" + buf.getvalue()
