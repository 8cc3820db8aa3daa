"""
文档导出服务 (Export Service)
先按 ExportOptions 组装与格式无关的文档结构，再渲染为 Markdown / PDF / EPUB。
"""
import os
import re
import html
import logging
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from fpdf import FPDF
from fpdf.enums import XPos, YPos
from ebooklib import epub

from core.exceptions import ExportError
from core.schemas import ExportOptions, Framework, Project

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("pdf", "epub", "markdown")

EMPTY_STAGE_PLACEHOLDER = "[No content for this stage]"
EMPTY_NARRATIVE_PLACEHOLDER = "[No story content available to form a continuous narrative.]"

_MIME_TYPES = {
    "pdf": "application/pdf",
    "epub": "application/epub+zip",
    "markdown": "text/markdown",
}
_EXTENSIONS = {"pdf": "pdf", "epub": "epub", "markdown": "md"}

# 可显示中文的候选字体，找不到时退回 Helvetica
_CANDIDATE_FONTS = [
    "C:/Windows/Fonts/simhei.ttf",
    "C:/Windows/Fonts/msyh.ttc",
    "/usr/share/fonts/truetype/droid/DroidSansFallbackFull.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/System/Library/Fonts/STHeiti Light.ttc",
]


@dataclass
class ExportSection:
    title: Optional[str]
    body: str
    description: Optional[str] = None
    placeholder: bool = False


@dataclass
class ExportDocument:
    title: str
    subtitle: Optional[str] = None
    modified_line: Optional[str] = None
    sections: List[ExportSection] = field(default_factory=list)


@dataclass(frozen=True)
class ExportResult:
    filename: str
    content: bytes
    mime_type: str


def safe_filename(name: str) -> str:
    name = re.sub(r"[^a-z0-9_.\s-]", "_", name or "story", flags=re.IGNORECASE)
    return re.sub(r"\s+", "_", name).lower()


def _format_date(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%B %d, %Y %H:%M UTC")


def build_export_document(project: Project, framework: Framework, options: ExportOptions) -> ExportDocument:
    """
    按导出选项组装文档结构。

    - 勾选阶段标题时强制关闭连续叙事。
    - 带标题的空阶段输出占位文本；不带标题时空阶段被跳过。
    """
    options = options.normalized()
    doc = ExportDocument(
        title=project.name,
        subtitle=f"Framework: {framework.name}" if options.include_framework_title else None,
        modified_line=f"Last Modified: {_format_date(project.last_modified)}",
    )

    if options.include_original_idea and project.raw_story_idea and project.raw_story_idea.strip():
        doc.sections.append(ExportSection(title="Original Story Idea", body=project.raw_story_idea))

    for stage in framework.stages:
        content = project.stage_text(stage.id)
        if options.include_stage_titles:
            if content.strip():
                doc.sections.append(ExportSection(title=stage.name, description=stage.description, body=content))
            else:
                doc.sections.append(ExportSection(title=stage.name, description=stage.description,
                                                  body=EMPTY_STAGE_PLACEHOLDER, placeholder=True))
        elif content.strip():
            doc.sections.append(ExportSection(title=None, body=content))

    if options.include_continuous_narrative:
        narrative = "\n\n".join(
            project.stage_text(s.id).strip() for s in framework.stages if project.stage_text(s.id).strip()
        )
        if narrative:
            doc.sections.append(ExportSection(title="Continuous Narrative", body=narrative))
        else:
            doc.sections.append(ExportSection(title="Continuous Narrative", body=EMPTY_NARRATIVE_PLACEHOLDER,
                                              placeholder=True))
    return doc


def export_as_markdown(doc: ExportDocument) -> str:
    """导出为 Markdown 字符串"""
    parts = [f"# {doc.title}"]
    if doc.subtitle:
        parts.append(f"## {doc.subtitle}")
    if doc.modified_line:
        parts.append(f"*{doc.modified_line}*")
    for section in doc.sections:
        if section.title:
            parts.append(f"### {section.title}")
        if section.description:
            parts.append(f"*{section.description}*")
        parts.append(f"*{section.body}*" if section.placeholder else section.body)
    return "\n\n".join(parts) + "\n"


def _load_pdf_font(pdf: FPDF) -> bool:
    for font_path in _CANDIDATE_FONTS:
        if not os.path.exists(font_path):
            continue
        try:
            for style in ("", "B", "I"):
                pdf.add_font("StoryFont", style, font_path)
            return True
        except Exception as e:
            logger.debug(f"加载字体失败 {font_path}: {e}")
            continue
    return False


def export_as_pdf(doc: ExportDocument) -> bytes:
    """导出为 PDF 字节流"""
    pdf = FPDF()
    pdf.set_auto_page_break(auto=True, margin=15)
    pdf.add_page()
    pdf.set_left_margin(15)
    pdf.set_right_margin(15)

    unicode_font = _load_pdf_font(pdf)
    family = "StoryFont" if unicode_font else "Helvetica"

    def text(value: str) -> str:
        # 内置字体只支持 latin-1
        return value if unicode_font else value.encode("latin-1", "replace").decode("latin-1")

    def paragraph(value: str, size: int, style: str = "", height: int = 8, align: str = "L"):
        pdf.set_font(family, style, size)
        pdf.multi_cell(0, height, text(value) or " ", align=align,
                       new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    paragraph(doc.title, 20, "B", height=12, align="C")
    pdf.ln(4)
    if doc.subtitle:
        paragraph(doc.subtitle, 14)
    if doc.modified_line:
        paragraph(doc.modified_line, 10, "I")
    pdf.ln(6)

    for section in doc.sections:
        if section.title == "Continuous Narrative":
            pdf.add_page()
            paragraph(section.title, 18, "B", height=10, align="C")
            pdf.ln(4)
        elif section.title:
            paragraph(section.title, 16, "B", height=10)
            if section.description:
                paragraph(section.description, 10, "I", height=6)
            pdf.ln(2)

        for line in section.body.split("\n"):
            paragraph(line, 12, "I" if section.placeholder else "")
        pdf.ln(6)

    return bytes(pdf.output())


def _html_paragraphs(body: str) -> str:
    formatted = ""
    for line in body.split("\n"):
        line = line.strip()
        formatted += f"<p>{html.escape(line)}</p>\n" if line else "<br/>\n"
    return formatted


def export_as_epub(doc: ExportDocument) -> bytes:
    """导出为 EPUB 字节流，每个带标题的段落成为一章"""
    book = epub.EpubBook()
    book.set_identifier(f"storygen_{safe_filename(doc.title)}")
    book.set_title(doc.title)
    book.set_language('en')
    book.add_author('StoryGen')

    intro = f"<h1>{html.escape(doc.title)}</h1>"
    if doc.subtitle:
        intro += f"<h2>{html.escape(doc.subtitle)}</h2>"
    if doc.modified_line:
        intro += f"<p><em>{html.escape(doc.modified_line)}</em></p>"

    chapters = []
    current_title, current_body = doc.title, intro
    for section in doc.sections:
        if section.title:
            chapters.append((current_title, current_body))
            current_title = section.title
            current_body = f"<h2>{html.escape(section.title)}</h2>"
            if section.description:
                current_body += f"<p><em>{html.escape(section.description)}</em></p>"
        current_body += _html_paragraphs(section.body)
    chapters.append((current_title, current_body))

    items = []
    for index, (title, body) in enumerate(chapters):
        chapter = epub.EpubHtml(title=title, file_name=f"chapter_{index:02d}.xhtml", lang='en')
        chapter.content = f"<html><head><meta charset='UTF-8'></head><body>{body}</body></html>"
        book.add_item(chapter)
        items.append(chapter)

    book.toc = items
    book.spine = ['nav'] + items
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())

    # 使用临时文件写入
    with tempfile.NamedTemporaryFile(delete=False, suffix='.epub') as tmp:
        temp_path = tmp.name

    try:
        epub.write_epub(temp_path, book)
        with open(temp_path, 'rb') as f:
            return f.read()
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def export_project(project: Project, framework: Framework, fmt: str, options: ExportOptions) -> ExportResult:
    """
    导出项目为指定格式。

    Raises:
        ExportError: 格式不支持或渲染失败。
    """
    fmt = (fmt or "").lower()
    if fmt not in EXPORT_FORMATS:
        raise ExportError(f"Unsupported export format: '{fmt}'")

    doc = build_export_document(project, framework, options)
    try:
        if fmt == "markdown":
            content = export_as_markdown(doc).encode("utf-8")
        elif fmt == "pdf":
            content = export_as_pdf(doc)
        else:
            content = export_as_epub(doc)
    except Exception as e:
        logger.error(f"导出 {fmt} 失败 ({project.id}): {e}", exc_info=True)
        raise ExportError(f"Failed to export project as {fmt}: {e}") from e

    filename = f"{safe_filename(project.name)}.{_EXTENSIONS[fmt]}"
    logger.info(f"项目已导出: {filename} ({len(content)} 字节)")
    return ExportResult(filename=filename, content=content, mime_type=_MIME_TYPES[fmt])
