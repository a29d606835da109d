from __future__ import annotations

import base64
from html import escape

from .commands import (
    CircleCommand,
    Color,
    ImageCommand,
    LineCommand,
    PageCommands,
    PolygonCommand,
    RectCommand,
    TextCommand,
)

READY_FLAG = "__READY_FOR_PDF__"

# Flags the page as ready once every image has decoded (or failed) and fonts loaded.
_READY_SCRIPT = (
    "<script>"
    "(function(){"
    "var images=Array.prototype.slice.call(document.images);"
    "var pending=images.map(function(img){"
    "if(img.complete){return Promise.resolve();}"
    "return new Promise(function(done){img.onload=done;img.onerror=done;});"
    "});"
    "var fonts=document.fonts&&document.fonts.ready?document.fonts.ready:Promise.resolve();"
    "Promise.all(pending.concat([fonts])).then(function(){window." + READY_FLAG + "=true;});"
    "})();"
    "</script>"
)


def _num(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def _css(color: Color | None) -> str:
    return color.css() if color is not None else "transparent"


def _text_html(command: TextCommand) -> str:
    width = f"width:{_num(command.width)}px;" if command.width else "white-space:pre;"
    text_value = escape(command.text).replace("\n", "<br/>")
    return (
        '<div style="position:absolute;'
        f"left:{_num(command.x)}px;top:{_num(command.y)}px;{width}"
        f"font-size:{_num(command.font_size)}px;line-height:1.2;"
        f"color:{_css(command.color)};text-align:{escape(command.align)};"
        f"font-weight:{'700' if command.bold else '400'};"
        'word-break:break-word;">'
        f"{text_value}</div>"
    )


def _rect_html(command: RectCommand) -> str:
    border = "none"
    if command.stroke is not None:
        style = "dashed" if command.dashed else "solid"
        border = f"{_num(command.stroke_width)}px {style} {_css(command.stroke)}"
    return (
        '<div style="position:absolute;box-sizing:border-box;'
        f"left:{_num(command.x)}px;top:{_num(command.y)}px;"
        f"width:{_num(command.width)}px;height:{_num(command.height)}px;"
        f"background:{_css(command.fill)};border:{border};"
        f'border-radius:{_num(command.radius)}px;"></div>'
    )


def _circle_html(command: CircleCommand) -> str:
    border = "none"
    if command.stroke is not None:
        border = f"{_num(command.stroke_width)}px solid {_css(command.stroke)}"
    diameter = command.radius * 2
    return (
        '<div style="position:absolute;box-sizing:border-box;border-radius:50%;'
        f"left:{_num(command.cx - command.radius)}px;top:{_num(command.cy - command.radius)}px;"
        f"width:{_num(diameter)}px;height:{_num(diameter)}px;"
        f'background:{_css(command.fill)};border:{border};"></div>'
    )


def _svg_wrap(page: PageCommands, body: str) -> str:
    return (
        '<svg style="position:absolute;left:0;top:0;overflow:visible;" '
        f'width="{_num(page.width)}" height="{_num(page.height)}" '
        'xmlns="http://www.w3.org/2000/svg">'
        f"{body}</svg>"
    )


def _line_html(command: LineCommand, page: PageCommands) -> str:
    return _svg_wrap(
        page,
        f'<line x1="{_num(command.x1)}" y1="{_num(command.y1)}" '
        f'x2="{_num(command.x2)}" y2="{_num(command.y2)}" '
        f'stroke="{_css(command.color)}" stroke-width="{_num(command.width)}"/>',
    )


def _polygon_html(command: PolygonCommand, page: PageCommands) -> str:
    points = " ".join(f"{_num(x)},{_num(y)}" for x, y in command.points)
    return _svg_wrap(page, f'<polygon points="{points}" fill="{_css(command.fill)}"/>')


def _image_html(command: ImageCommand) -> str:
    source = f"data:{command.mime_type};base64,{base64.b64encode(command.data).decode('ascii')}"
    radius = "border-radius:50%;" if command.clip_circle else ""
    fit = "contain" if command.fit == "contain" else "fill"
    return (
        f'<img src="{escape(source)}" alt="" style="position:absolute;display:block;'
        f"left:{_num(command.x)}px;top:{_num(command.y)}px;"
        f"width:{_num(command.width)}px;height:{_num(command.height)}px;"
        f'object-fit:{fit};{radius}"/>'
    )


def render_page_html(page: PageCommands) -> str:
    parts: list[str] = []
    for command in page.commands:
        if isinstance(command, TextCommand):
            parts.append(_text_html(command))
        elif isinstance(command, RectCommand):
            parts.append(_rect_html(command))
        elif isinstance(command, CircleCommand):
            parts.append(_circle_html(command))
        elif isinstance(command, LineCommand):
            parts.append(_line_html(command, page))
        elif isinstance(command, PolygonCommand):
            parts.append(_polygon_html(command, page))
        elif isinstance(command, ImageCommand):
            parts.append(_image_html(command))
    background = _css(page.background) if page.background is not None else "#ffffff"
    return (
        f'<div class="page-canvas" style="position:relative;width:{_num(page.width)}px;'
        f'height:{_num(page.height)}px;overflow:hidden;box-sizing:border-box;background:{background};">'
        f"{''.join(parts)}</div>"
    )


def render_document_html(pages: list[PageCommands], *, title: str = "") -> str:
    width = pages[0].width if pages else 800
    height = pages[0].height if pages else 1120
    return (
        "<!doctype html>"
        "<html><head><meta charset='utf-8'>"
        f"<title>{escape(title)}</title>"
        "<style>"
        f"@page {{ size: {_num(width)}px {_num(height)}px; margin: 0; }}"
        "html,body{margin:0;padding:0;background:#ffffff;}"
        "body{font-family:Helvetica,Arial,sans-serif;}"
        ".page-canvas{page-break-after:always;break-after:page;}"
        ".page-canvas:last-of-type{page-break-after:auto;break-after:auto;}"
        "</style>"
        "</head><body>"
        f"{''.join(render_page_html(page) for page in pages)}"
        f"{_READY_SCRIPT}"
        "</body></html>"
    )
