import concurrent.futures
from datetime import date, datetime, timezone as dt_timezone
from io import BytesIO
from unittest.mock import MagicMock, patch
from urllib.error import URLError

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase, override_settings
from PIL import Image
from pypdf import PdfReader

from school.models import Category, Competency, Enrollment, SchoolClass, SchoolYear, Student, StudentCompetencyStatus

from .block_registry import validate_template_pages
from .blocks import DropdownBlock, SignatureBoxBlock, TableBlock, decode_block
from .browser_pool import BrowserPool
from .commands import CircleCommand, Color, ImageCommand, RectCommand, TextCommand, parse_color
from .exceptions import GradebookRenderError
from .exporters import (
    BrowserExporter,
    VectorExporter,
    batch_filename,
    carnet_filename,
    content_disposition,
    get_exporter,
    sanitize_filename,
    student_pdf_filename,
)
from .html_executor import READY_FLAG, render_document_html
from .images import ImageLoader, LoadedImage, decode_data_uri, emoji_for_language, emoji_icon_url, flag_icon_url
from .interpreter import (
    ACTIVE_RING,
    FLOW_SPACING,
    FLOW_TOP,
    ICON_FALLBACK_FILL,
    LINE_HEIGHT,
    RenderDocument,
    TemplateInterpreter,
)
from .layout import A4_HEIGHT_PT, A4_WIDTH_PT, a4_mapper, design_mapper
from .models import GradebookTemplate, TemplateAssignment
from .resolvers import (
    RenderContext,
    SignatureRecord,
    StudentInfo,
    interpolate_text,
    level_allowed,
    resolve_dropdown_value,
    resolve_table_languages,
)
from .services import build_render_document, load_assignment_carnet, load_student_carnet, update_template_layout


def _png_bytes(color=(16, 185, 129), size=(8, 8)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="PNG")
    return buffer.getvalue()


def _jpeg_bytes() -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (80, 112), color=(255, 255, 255)).save(buffer, format="JPEG")
    return buffer.getvalue()


def _offline_loader() -> ImageLoader:
    loader = ImageLoader(max_entries=8)
    loader.fetch_remote = MagicMock(return_value=None)
    return loader


def _student(level="PS", **overrides) -> StudentInfo:
    values = {
        "first_name": "Lina",
        "last_name": "Haddad",
        "date_of_birth": date(2019, 3, 5),
        "level": level,
        "class_name": "PS-A",
    }
    values.update(overrides)
    return StudentInfo(**values)


def _text(text, **props) -> dict:
    return {"type": "text", "props": {"text": text, **props}}


def _render(pages, *, context=None, mapper=None, loader=None, **document_kwargs):
    interpreter = TemplateInterpreter(mapper or design_mapper(), image_loader=loader or _offline_loader())
    document = RenderDocument(pages=pages, context=context or RenderContext(student=_student()), **document_kwargs)
    return interpreter.render(document)


def _pdf_text(pdf_bytes: bytes) -> str:
    reader = PdfReader(BytesIO(pdf_bytes))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


class CoordinateMapperTests(SimpleTestCase):
    def test_design_space_maps_onto_a4_points(self):
        mapper = a4_mapper()
        self.assertAlmostEqual(mapper.scale_x(800), A4_WIDTH_PT)
        self.assertAlmostEqual(mapper.scale_y(1120), A4_HEIGHT_PT)
        self.assertAlmostEqual(mapper.scale_x(400), A4_WIDTH_PT / 2)

    def test_design_mapper_is_identity(self):
        mapper = design_mapper()
        self.assertEqual(mapper.rect(10, 20, 30, 40), (10, 20, 30, 40))
        self.assertEqual(mapper.scale_radial(12), 12)

    def test_positioned_rect_scales_proportionally(self):
        pages = [{"blocks": [{"type": "rect", "props": {"x": 100, "y": 200, "width": 50, "height": 60, "color": "#f00"}}]}]
        design_rect = _render(pages)[0].commands[0]
        a4_rect = _render(pages, mapper=a4_mapper())[0].commands[0]
        self.assertIsInstance(a4_rect, RectCommand)
        self.assertAlmostEqual(a4_rect.x / A4_WIDTH_PT, design_rect.x / 800)
        self.assertAlmostEqual(a4_rect.y / A4_HEIGHT_PT, design_rect.y / 1120)
        self.assertAlmostEqual(a4_rect.height / A4_HEIGHT_PT, design_rect.height / 1120)


class ResolverTests(SimpleTestCase):
    def test_interpolation_replaces_known_tokens_and_keeps_unknown(self):
        text = "{student.firstName} {student.lastName} {student.dob} {class.name} {unknown}"
        self.assertEqual(interpolate_text(text, _student()), "Lina Haddad 05:03:2019 PS-A {unknown}")

    def test_dropdown_value_prefers_block_id_then_number_then_variable(self):
        block = decode_block(
            {"type": "dropdown", "props": {"blockId": "abc", "dropdownNumber": 2, "variableName": "appreciation"}},
            index=0,
        )
        self.assertIsInstance(block, DropdownBlock)
        data = {"dropdown_abc": "A", "dropdown_2": "B", "appreciation": "C"}
        self.assertEqual(resolve_dropdown_value(data, block), "A")
        data["dropdown_abc"] = ""
        self.assertEqual(resolve_dropdown_value(data, block), "B")

        by_variable = decode_block({"type": "dropdown", "props": {"variableName": "appreciation"}}, index=1)
        self.assertEqual(resolve_dropdown_value({"appreciation": "C"}, by_variable), "C")
        self.assertIsNone(resolve_dropdown_value({"appreciation": ""}, by_variable))

    def test_level_allowed_is_case_insensitive_and_open_when_empty(self):
        self.assertTrue(level_allowed([], "PS"))
        self.assertTrue(level_allowed(["ms", "GS"], "MS"))
        self.assertFalse(level_allowed(["MS"], "PS"))

    def test_table_languages_prefer_row_id_override(self):
        block = decode_block(
            {"type": "table", "props": {"blockId": "t1", "rowIds": ["r1"], "cells": [[{"text": "Maths"}]]}},
            index=3,
        )
        self.assertIsInstance(block, TableBlock)
        data = {
            "table_t1_row_r1": [{"code": "fr", "active": True}],
            "table_3_row_0": [{"code": "en"}],
        }
        languages = resolve_table_languages(data, block, row_index=0)
        self.assertEqual([item.code for item in languages], ["fr"])
        self.assertTrue(languages[0].active)
        self.assertEqual(
            [item.code for item in resolve_table_languages({}, block, row_index=0)],
            ["lb", "fr", "en"],
        )

    def test_signature_box_level_comes_from_label(self):
        block = decode_block({"type": "signature_box", "props": {"label": "Signature ms"}}, index=0)
        self.assertIsInstance(block, SignatureBoxBlock)
        self.assertEqual(block.level, "MS")

    def test_unknown_block_types_decode_to_none(self):
        self.assertIsNone(decode_block({"type": "video", "props": {}}, index=0))
        self.assertIsNone(decode_block("text", index=0))

    def test_non_finite_numbers_decode_to_defaults(self):
        dropdown = decode_block({"type": "dropdown", "props": {"dropdownNumber": "nan"}}, index=0)
        self.assertIsNone(dropdown.dropdown_number)
        overflowing = decode_block({"type": "dropdown", "props": {"dropdownNumber": "1e999"}}, index=1)
        self.assertIsNone(overflowing.dropdown_number)
        self.assertEqual(decode_block(_text("Hi", fontSize="inf"), index=2).font_size, 12.0)

    def test_template_validation_rejects_non_finite_dropdown_number(self):
        for value in ("nan", "1e999", "abc"):
            with self.subTest(value=value), self.assertRaises(ValidationError) as raised:
                validate_template_pages([{"blocks": [{"type": "dropdown", "props": {"dropdownNumber": value}}]}])
            self.assertIn("pages[0].blocks[0].props.dropdownNumber", raised.exception.message_dict)
        validate_template_pages([{"blocks": [{"type": "dropdown", "props": {"dropdownNumber": 3}}]}])

    def test_transparent_colour_is_no_paint(self):
        self.assertIsNone(parse_color("transparent"))
        self.assertEqual(parse_color("#abc").css(), "#aabbcc")
        self.assertEqual(parse_color("rgba(0, 0, 0, 0.5)").css(), "rgba(0,0,0,0.5)")


class InterpreterTests(SimpleTestCase):
    def test_flow_blocks_stack_from_the_top(self):
        pages = [{"blocks": [_text("First"), _text("Second")]}]
        commands = [command for command in _render(pages)[0].commands if isinstance(command, TextCommand)]
        self.assertEqual([command.text for command in commands], ["First", "Second"])
        self.assertAlmostEqual(commands[0].y, FLOW_TOP)
        self.assertAlmostEqual(commands[1].y, FLOW_TOP + 12 * LINE_HEIGHT + FLOW_SPACING)

    def test_equal_z_keeps_document_order(self):
        pages = [
            {
                "blocks": [
                    _text("first", x=10, y=10, z=1),
                    _text("second", x=10, y=40, z=0),
                    _text("third", x=10, y=70, z=1),
                ]
            }
        ]
        self.assertEqual(_render(pages)[0].texts(), ["second", "first", "third"])

    def test_level_gated_blocks_are_skipped(self):
        pages = [{"blocks": [_text("Only MS", x=10, y=10, levels=["ms"]), _text("Everyone", x=10, y=40)]}]
        self.assertEqual(_render(pages)[0].texts(), ["Everyone"])
        ms_context = RenderContext(student=_student(level="MS"))
        self.assertEqual(_render(pages, context=ms_context)[0].texts(), ["Only MS", "Everyone"])

    def test_unsupported_and_excluded_pages(self):
        pages = [
            {"blocks": [{"type": "video", "props": {}}, _text("Kept", x=5, y=5)]},
            {"excludeFromPdf": True, "blocks": [_text("Hidden", x=5, y=5)]},
            {"blocks": [_text("Third", x=5, y=5)]},
        ]
        rendered = _render(pages)
        self.assertEqual([page.texts() for page in rendered], [["Kept"], ["Third"]])
        visible = _render(pages, visible_pages=[2])
        self.assertEqual([page.texts() for page in visible], [["Third"]])

    def test_dynamic_text_is_interpolated(self):
        pages = [{"blocks": [{"type": "dynamic_text", "props": {"text": "Élève: {student.firstName}", "x": 5, "y": 5}}]}]
        self.assertEqual(_render(pages)[0].texts(), ["Élève: Lina"])

    def test_dropdown_placeholder_and_reference(self):
        pages = [
            {
                "blocks": [
                    {"type": "dropdown", "props": {"x": 10, "y": 10, "dropdownNumber": 1}},
                    {"type": "dropdown_reference", "props": {"x": 10, "y": 100, "dropdownNumber": 2}},
                ]
            }
        ]
        texts = _render(pages)[0].texts()
        self.assertIn("Sélectionner...", texts)
        self.assertIn("Dropdown #1", texts)

        context = RenderContext(student=_student(), data={"dropdown_1": "Très bien", "dropdown_2": "Acquis"})
        texts = _render(pages, context=context)[0].texts()
        self.assertIn("Très bien", texts)
        self.assertIn("Acquis", texts)
        self.assertNotIn("Sélectionner...", texts)

    def test_promotion_field_uses_stored_promotion(self):
        context = RenderContext(
            student=_student(),
            data={"promotions": [{"from": "PS", "to": "MS", "year": "2024/2025", "class": "PS-A"}]},
        )
        pages = [
            {
                "blocks": [
                    {"type": "promotion_info", "props": {"x": 10, "y": 10, "field": "level"}},
                    {"type": "promotion_info", "props": {"x": 10, "y": 50, "field": "year"}},
                    {"type": "promotion_info", "props": {"x": 10, "y": 90, "field": "class"}},
                ]
            }
        ]
        self.assertEqual(_render(pages, context=context)[0].texts(), ["MS", "Année 2024/2025", "A"])

    def test_promotion_is_synthesized_from_end_of_year_signature(self):
        block = {"type": "promotion_info", "props": {"x": 10, "y": 10, "field": "year", "period": "end-year"}}
        pages = [{"blocks": [block]}]
        self.assertEqual(_render(pages)[0].texts(), [])

        context = RenderContext(
            student=_student(),
            data={
                "signatures": [
                    {"type": "end_of_year", "signedAt": "2025-06-20T10:00:00+00:00", "schoolYearName": "2025/2026"}
                ]
            },
        )
        self.assertEqual(_render(pages, context=context)[0].texts(), ["Année 2025/2026"])

    def test_promotion_target_level_must_match_next_level(self):
        context = RenderContext(
            student=_student(),
            data={"promotions": [{"from": "PS", "to": "MS", "year": "2024/2025"}]},
        )
        pages = [{"blocks": [{"type": "promotion_info", "props": {"x": 10, "y": 10, "targetLevel": "GS"}}]}]
        self.assertEqual(_render(pages, context=context)[0].texts(), [])

    def test_promotion_without_student_level_is_not_gated(self):
        context = RenderContext(
            student=_student(level=""),
            data={"promotions": [{"from": "PS", "to": "MS", "year": "2024/2025"}]},
        )
        pages = [
            {
                "blocks": [
                    {"type": "promotion_info", "props": {"x": 10, "y": 10, "field": "level", "targetLevel": "MS"}},
                    {"type": "promotion_info", "props": {"x": 10, "y": 50, "field": "year", "targetLevel": "MS"}},
                    {"type": "promotion_info", "props": {"x": 10, "y": 90, "field": "level", "level": "GS"}},
                ]
            }
        ]
        self.assertEqual(_render(pages, context=context)[0].texts(), ["MS", "Année 2024/2025"])

    def test_bad_numbers_in_props_never_abort_the_document(self):
        pages = [{"blocks": [_text("Keep me"), {"type": "dropdown", "props": {"dropdownNumber": "nan"}}]}]
        rendered = _render(pages)
        self.assertEqual(len(rendered), 1)
        self.assertIn("Keep me", rendered[0].texts())

    def test_block_that_fails_to_decode_is_skipped(self):
        def decode(raw_block, *, index):
            if index == 0:
                raise OverflowError("cannot convert float infinity to integer")
            return decode_block(raw_block, index=index)

        pages = [{"blocks": [_text("Broken", x=5, y=5), _text("Fine", x=5, y=30)]}]
        with patch("gradebooks.interpreter.decode_block", side_effect=decode):
            rendered = _render(pages)
        self.assertEqual(rendered[0].texts(), ["Fine"])

    def test_signature_box_uses_snapshot_never_live_url(self):
        snapshot = _png_bytes(color=(0, 0, 0))
        record = SignatureRecord(
            type="standard",
            signed_at=datetime(2025, 1, 20, 9, 0, tzinfo=dt_timezone.utc),
            signer_name="Mme Karam",
            signature_url="https://example.com/live-signature.png",
            signature_data=LoadedImage(data=snapshot, mime_type="image/png").data_uri(),
        )
        loader = _offline_loader()
        context = RenderContext(student=_student(), signatures=(record,))
        pages = [{"blocks": [{"type": "signature_box", "props": {"x": 10, "y": 10, "label": "Directrice"}}]}]
        page = _render(pages, context=context, loader=loader)[0]
        images = [command for command in page.commands if isinstance(command, ImageCommand)]
        self.assertEqual(len(images), 1)
        self.assertEqual(images[0].data, snapshot)
        loader.fetch_remote.assert_not_called()

    def test_signature_box_fallbacks(self):
        pages = [{"blocks": [{"type": "signature_box", "props": {"x": 10, "y": 10, "label": "Directrice"}}]}]
        self.assertEqual(_render(pages)[0].texts(), ["Directrice"])

        record = SignatureRecord(signed_at=datetime(2025, 1, 20, 9, 0), signer_name="Mme Karam")
        context = RenderContext(student=_student(), signatures=(record,))
        self.assertEqual(_render(pages, context=context)[0].texts(), ["✓ Mme Karam 20/01/2025"])

        hidden = RenderContext(student=_student(), signatures=(record,), hide_signatures=True)
        self.assertEqual(_render(pages, context=hidden)[0].texts(), [])

    def test_signature_date_by_semester(self):
        context = RenderContext(
            student=_student(),
            data={
                "signatures": [
                    {"type": "standard", "signedAt": "2025-01-20T09:00:00+00:00", "level": "PS"},
                    {"type": "end_of_year", "signedAt": "2025-06-20T09:00:00+00:00", "level": "PS"},
                ]
            },
        )
        pages = [{"blocks": [{"type": "signature_date", "props": {"x": 10, "y": 10, "semester": 2, "showMeta": True}}]}]
        self.assertEqual(_render(pages, context=context)[0].texts(), ["Signé le: (PS S2)", "20:06:2025"])

    def test_renderer_errors_skip_only_that_block(self):
        interpreter = TemplateInterpreter(design_mapper(), image_loader=_offline_loader())
        pages = [{"blocks": [_text("Broken", x=5, y=5), _text("Fine", x=5, y=30)]}]
        original = interpreter._render_text

        def flaky(block, x, y, scope):
            if block.text == "Broken":
                raise ValueError("boom")
            return original(block, x, y, scope)

        interpreter._renderers[type(decode_block(pages[0]["blocks"][0], index=0))] = flaky
        rendered = interpreter.render(RenderDocument(pages=pages, context=RenderContext(student=_student())))
        self.assertEqual(rendered[0].texts(), ["Fine"])

    @override_settings(GRADEBOOK_QR_PROVIDER="service", GRADEBOOK_QR_SERVICE_URL="https://qr.example.com/create")
    def test_qr_block_requests_pixel_size_of_output(self):
        loader = ImageLoader(max_entries=8)
        loader.fetch_remote = MagicMock(return_value=LoadedImage(data=_png_bytes(), mime_type="image/png"))
        pages = [{"blocks": [{"type": "qr", "props": {"x": 10, "y": 10, "width": 120, "height": 120, "url": "https://example.com"}}]}]
        page = _render(pages, loader=loader)[0]
        requested_url = loader.fetch_remote.call_args[0][0]
        self.assertTrue(requested_url.startswith("https://qr.example.com/create?"))
        self.assertIn("size=120x120", requested_url)
        self.assertIn("data=https%3A%2F%2Fexample.com", requested_url)
        self.assertTrue(any(isinstance(command, ImageCommand) for command in page.commands))


WHITE_VEIL = Color(255, 255, 255, 0.4)
BLACK_VEIL = Color(0, 0, 0, 0.4)


def _icon_loader(image: LoadedImage | None) -> ImageLoader:
    loader = ImageLoader(max_entries=8)
    loader.fetch_remote = MagicMock(return_value=image)
    return loader


def _circles(page) -> list[CircleCommand]:
    return [command for command in page.commands if isinstance(command, CircleCommand)]


def _images(page) -> list[ImageCommand]:
    return [command for command in page.commands if isinstance(command, ImageCommand)]


@override_settings(
    GRADEBOOK_EMOJI_CDN_URL="https://emoji.example.com/",
    GRADEBOOK_FLAG_CDN_URL="https://flags.example.com/",
)
class LanguageIconTests(SimpleTestCase):
    def setUp(self):
        self.png = _png_bytes()
        self.context = RenderContext(
            student=_student(),
            data={"table_0_row_0": [{"code": "fr", "active": True}, {"code": "en"}]},
        )

    def _table_pages(self, **props):
        table = {
            "type": "table",
            "props": {"x": 10, "y": 10, "cells": [[{"text": "Lire"}]], "expandedRows": True, **props},
        }
        return [{"blocks": [table]}]

    def _requested_urls(self, loader) -> list[str]:
        return [call.args[0] for call in loader.fetch_remote.call_args_list]

    def test_expanded_row_rings_active_icon_and_veils_inactive_one(self):
        loader = _icon_loader(LoadedImage(data=self.png, mime_type="image/png"))
        page = _render(self._table_pages(), context=self.context, loader=loader)[0]

        images = _images(page)
        self.assertEqual(len(images), 2)
        self.assertTrue(all(image.clip_circle for image in images))

        ring, veil = _circles(page)
        self.assertEqual(ring.stroke, parse_color(ACTIVE_RING))
        self.assertIsNone(ring.fill)
        self.assertEqual(ring.stroke_width, 1)
        self.assertEqual(ring.radius, veil.radius + 1)
        self.assertEqual(veil.fill, WHITE_VEIL)
        self.assertIsNone(veil.stroke)

    def test_expanded_row_icon_source_follows_toggle_style(self):
        image = LoadedImage(data=self.png, mime_type="image/png")
        emoji_loader = _icon_loader(image)
        _render(self._table_pages(), context=self.context, loader=emoji_loader)
        self.assertEqual(
            self._requested_urls(emoji_loader),
            [emoji_icon_url(emoji_for_language("fr")), emoji_icon_url(emoji_for_language("en"))],
        )
        self.assertTrue(all(url.startswith("https://emoji.example.com/") for url in self._requested_urls(emoji_loader)))

        flag_loader = _icon_loader(image)
        _render(self._table_pages(expandedToggleStyle="v1"), context=self.context, loader=flag_loader)
        self.assertEqual(
            self._requested_urls(flag_loader),
            ["https://flags.example.com/fr.png", "https://flags.example.com/gb.png"],
        )

    def test_failed_icon_fetch_draws_grey_circle_with_code(self):
        page = _render(self._table_pages(), context=self.context, loader=_icon_loader(None))[0]
        self.assertEqual(_images(page), [])
        fallback = [circle for circle in _circles(page) if circle.fill == parse_color(ICON_FALLBACK_FILL)]
        self.assertEqual(len(fallback), 2)
        self.assertIn("FR", page.texts())
        self.assertIn("EN", page.texts())
        self.assertEqual(len([circle for circle in _circles(page) if circle.fill == WHITE_VEIL]), 1)

    def test_language_toggle_darkens_inactive_logos(self):
        logo = LoadedImage(data=self.png, mime_type="image/png").data_uri()
        loader = _icon_loader(None)
        block = {
            "type": "language_toggle",
            "props": {
                "x": 10,
                "y": 10,
                "radius": 20,
                "items": [{"code": "fr", "logo": logo, "active": True}, {"code": "en", "logo": logo}],
            },
        }
        page = _render([{"blocks": [block]}], loader=loader)[0]
        self.assertEqual([image.data for image in _images(page)], [self.png, self.png])
        self.assertEqual(len([circle for circle in _circles(page) if circle.fill == BLACK_VEIL]), 1)
        self.assertTrue(all(circle.stroke is None for circle in _circles(page)))
        loader.fetch_remote.assert_not_called()

    def test_language_toggle_v2_darkens_inactive_emoji_without_ring(self):
        loader = _icon_loader(LoadedImage(data=self.png, mime_type="image/png"))
        block = {
            "type": "language_toggle_v2",
            "props": {"x": 10, "y": 10, "items": [{"code": "fr", "active": True}, {"code": "en"}]},
        }
        page = _render([{"blocks": [block]}], loader=loader)[0]
        circles = _circles(page)
        self.assertEqual([circle.fill for circle in circles], [BLACK_VEIL])
        self.assertIsNone(circles[0].stroke)
        self.assertEqual(len(_images(page)), 2)
        self.assertEqual(
            self._requested_urls(loader),
            [emoji_icon_url(emoji_for_language("fr")), emoji_icon_url(emoji_for_language("en"))],
        )


class ImageBlockTests(SimpleTestCase):
    def _image_page(self, url, loader):
        block = {"type": "image", "props": {"x": 20, "y": 30, "width": 100, "height": 50, "url": url}}
        return _render([{"blocks": [block, _text("After", x=5, y=200)]}], loader=loader)[0]

    def test_data_uri_is_drawn_without_network(self):
        png = _png_bytes()
        loader = _icon_loader(None)
        page = self._image_page(LoadedImage(data=png, mime_type="image/png").data_uri(), loader)
        (image,) = _images(page)
        self.assertEqual(image.data, png)
        self.assertEqual((image.x, image.y, image.width, image.height), (20, 30, 100, 50))
        loader.fetch_remote.assert_not_called()

    def test_absolute_url_is_fetched(self):
        png = _png_bytes()
        loader = _icon_loader(LoadedImage(data=png, mime_type="image/png"))
        page = self._image_page("https://cdn.example.com/logo.png", loader)
        loader.fetch_remote.assert_called_once_with("https://cdn.example.com/logo.png")
        self.assertEqual([image.data for image in _images(page)], [png])

    @override_settings(GRADEBOOK_PUBLIC_BASE_URL="https://school.example.com")
    def test_relative_path_is_fetched_through_public_base_url(self):
        png = _png_bytes()
        loader = _icon_loader(LoadedImage(data=png, mime_type="image/png"))
        page = self._image_page("/static/logo.png", loader)
        loader.fetch_remote.assert_called_once_with("https://school.example.com/static/logo.png")
        self.assertEqual(len(_images(page)), 1)

    def test_unresolvable_image_is_omitted(self):
        page = self._image_page("https://cdn.example.com/missing.png", _icon_loader(None))
        self.assertEqual(_images(page), [])
        self.assertEqual(page.texts(), ["After"])


class DefaultCarnetTests(SimpleTestCase):
    def test_default_carnet_lists_student_and_competencies(self):
        from .resolvers import CategoryInfo, CompetencyLine

        context = RenderContext(
            student=_student(),
            categories=(
                CategoryInfo(
                    category_id="1",
                    name="Langage",
                    competencies=(CompetencyLine(label="Lire", en=True, fr=False, ar=True),),
                ),
            ),
        )
        texts = _render([], context=context, use_default_carnet=True)[0].texts()
        self.assertEqual(texts[:3], ["Carnet Scolaire", "Nom: Lina Haddad", "Classe: PS-A"])
        self.assertIn("Langage", texts)
        self.assertIn("Lire — EN ✔ | FR ✘ | AR ✔", texts)


class ImageLoaderTests(SimpleTestCase):
    def test_data_uri_is_decoded_and_verified(self):
        png = _png_bytes()
        loaded = decode_data_uri(LoadedImage(data=png, mime_type="image/png").data_uri())
        self.assertEqual(loaded.data, png)
        self.assertEqual(loaded.mime_type, "image/png")
        self.assertIsNone(decode_data_uri("data:image/png;base64,bm90LWFuLWltYWdl"))

    def test_failed_fetch_is_not_cached(self):
        response = MagicMock()
        response.read.return_value = _png_bytes()
        response.headers = {"Content-Type": "image/png"}
        success = MagicMock()
        success.__enter__.return_value = response
        loader = ImageLoader(max_entries=8)
        with patch("gradebooks.images.urlopen", side_effect=[URLError("down"), success]) as urlopen_mock:
            self.assertIsNone(loader.load("https://example.com/logo.png"))
            self.assertIsNotNone(loader.load("https://example.com/logo.png"))
            self.assertIsNotNone(loader.load("https://example.com/logo.png"))
        self.assertEqual(urlopen_mock.call_count, 2)

    @override_settings(GRADEBOOK_PUBLIC_BASE_URL="https://school.example.com")
    def test_relative_path_outside_media_uses_public_base_url(self):
        loader = ImageLoader(max_entries=8)
        loader.fetch_remote = MagicMock(return_value=None)
        loader.load("/static/logo.png")
        loader.fetch_remote.assert_called_once_with("https://school.example.com/static/logo.png")

    @override_settings(
        GRADEBOOK_EMOJI_CDN_URL="https://emojicdn.elk.sh/",
        GRADEBOOK_FLAG_CDN_URL="https://flagcdn.com/w80/",
    )
    def test_icon_urls(self):
        self.assertEqual(emoji_icon_url("🇫🇷"), "https://emojicdn.elk.sh/%F0%9F%87%AB%F0%9F%87%B7?style=apple")
        self.assertEqual(flag_icon_url("ar"), "https://flagcdn.com/w80/lb.png")
        self.assertEqual(flag_icon_url("en"), "https://flagcdn.com/w80/gb.png")


class FilenameTests(SimpleTestCase):
    def test_filenames(self):
        self.assertEqual(sanitize_filename("Élève/École"), "Eleve_Ecole")
        self.assertEqual(carnet_filename(last_name="Haddad", first_name="Lina"), "carnet-Haddad-Lina.pdf")
        self.assertEqual(
            student_pdf_filename(level="ms", first_name="Lina", last_name="Haddad", year_name="2024/2025"),
            "MS-Lina-Haddad-2024-2025.pdf",
        )
        self.assertEqual(batch_filename("PS-A"), "carnets-PS-A.zip")
        self.assertEqual(batch_filename(""), "carnets.zip")

    def test_content_disposition_has_ascii_and_utf8_names(self):
        self.assertEqual(
            content_disposition("carnet-Zoé.pdf"),
            "attachment; filename=\"carnet-Zoe.pdf\"; filename*=UTF-8''carnet-Zo%C3%A9.pdf",
        )


class ExecutorTests(SimpleTestCase):
    def _document(self, **kwargs) -> RenderDocument:
        return RenderDocument(
            pages=[{"blocks": [_text("Hello {student.firstName}"), _text("Carnet PS", x=40, y=200)]}, {"blocks": []}],
            context=RenderContext(student=_student(), printed_on=date(2025, 2, 1)),
            title="Carnet - Lina Haddad",
            **kwargs,
        )

    def test_vector_pdf_is_deterministic_and_has_footer(self):
        exporter = VectorExporter(image_loader=_offline_loader())
        first = exporter.render(self._document())
        second = exporter.render(self._document())
        self.assertTrue(first.startswith(b"%PDF"))
        self.assertEqual(first, second)
        reader = PdfReader(BytesIO(first))
        self.assertEqual(len(reader.pages), 2)
        self.assertAlmostEqual(float(reader.pages[0].mediabox.width), A4_WIDTH_PT, places=1)
        text = _pdf_text(first)
        self.assertIn("Hello {student.firstName}", text)
        self.assertIn("01/02/2025", reader.pages[1].extract_text())
        self.assertNotIn("01/02/2025", reader.pages[0].extract_text())

    def test_html_output_has_one_canvas_per_page_and_ready_flag(self):
        pages = _render(self._document().pages)
        html = render_document_html(pages, title="Carnet")
        self.assertEqual(html.count('class="page-canvas"'), 2)
        self.assertIn(READY_FLAG, html)
        self.assertIn("Carnet PS", html)

    def test_browser_exporter_assembles_screenshots(self):
        pool = MagicMock()
        pool.with_page.return_value = [_jpeg_bytes(), _jpeg_bytes()]
        exporter = BrowserExporter(pool=pool, image_loader=_offline_loader(), use_native=False)
        pdf_bytes = exporter.render(self._document())
        self.assertTrue(pdf_bytes.startswith(b"%PDF"))
        self.assertEqual(len(PdfReader(BytesIO(pdf_bytes)).pages), 2)

    def test_browser_exporter_rejects_empty_output(self):
        pool = MagicMock()
        pool.with_page.return_value = []
        exporter = BrowserExporter(pool=pool, image_loader=_offline_loader(), use_native=False)
        with self.assertRaises(GradebookRenderError) as raised:
            exporter.render(self._document())
        self.assertEqual(raised.exception.status_code, 500)

    def test_unknown_strategy(self):
        with self.assertRaises(GradebookRenderError) as raised:
            get_exporter("bitmap")
        self.assertEqual(raised.exception.code, "invalid_strategy")


class BrowserPoolTests(SimpleTestCase):
    def test_timed_out_call_is_cancelled_and_reraised(self):
        pool = BrowserPool(max_pages=1, launch_args=[])
        future = MagicMock()
        future.result.side_effect = concurrent.futures.TimeoutError()
        with patch.object(pool, "_ensure_loop", return_value=MagicMock()), patch(
            "gradebooks.browser_pool.asyncio.run_coroutine_threadsafe", return_value=future
        ):
            with self.assertRaises(concurrent.futures.TimeoutError):
                pool._submit(lambda: None, timeout=0.01)
        future.result.assert_called_once_with(0.01)
        future.cancel.assert_called_once()


class TemplateVersioningTests(TestCase):
    def setUp(self):
        self.year = SchoolYear.objects.create(name="2024/2025", active=True, sequence=1)
        self.school_class = SchoolClass.objects.create(name="PS-A", level="PS", school_year=self.year)
        self.student = Student.objects.create(
            first_name="Lina",
            last_name="Haddad",
            date_of_birth=date(2019, 3, 5),
            level="PS",
        )
        Enrollment.objects.create(student=self.student, school_class=self.school_class, school_year=self.year)
        self.other_student = Student.objects.create(first_name="Karim", last_name="Nassar", level="PS")
        self.template = GradebookTemplate.objects.create(
            name="Carnet PS",
            pages=[{"blocks": [_text("Version one", x=40, y=40)]}],
        )

    def _texts(self, document):
        return _render(document.pages, context=document.context, use_default_carnet=document.use_default_carnet)[0].texts()

    def test_assignment_keeps_pinned_version_after_template_edit(self):
        assignment = TemplateAssignment.objects.create(template=self.template, student=self.student)
        self.assertEqual(assignment.template_version, 1)

        updated = update_template_layout(self.template, pages=[{"blocks": [_text("Version two", x=40, y=40)]}])
        self.assertEqual(updated.current_version, 2)
        self.assertEqual(updated.version_history[0]["version"], 1)

        pinned = load_assignment_carnet(assignment.id)
        self.assertEqual(self._texts(pinned.document), ["Version one"])
        self.assertEqual(pinned.filename, "PS-Lina-Haddad-2024-2025.pdf")

        fresh = TemplateAssignment.objects.create(template=updated, student=self.other_student)
        self.assertEqual(fresh.template_version, 2)
        self.assertEqual(self._texts(load_assignment_carnet(fresh.id).document), ["Version two"])

    def test_unchanged_layout_does_not_bump_version(self):
        same = update_template_layout(self.template, pages=list(self.template.pages))
        self.assertEqual(same.current_version, 1)
        self.assertEqual(same.version_history, [])

    def test_password_protected_template_falls_back_to_default_carnet(self):
        self.template.set_export_password("secret")
        self.template.save()
        category = Category.objects.create(name="Langage", order=1)
        competency = Competency.objects.create(category=category, label="Lire")
        StudentCompetencyStatus.objects.create(student=self.student, competency=competency, en=True)

        locked = load_student_carnet(student_id=self.student.id, template_id=self.template.id, password="wrong")
        self.assertTrue(locked.document.use_default_carnet)
        texts = self._texts(locked.document)
        self.assertIn("Classe: PS-A", texts)
        self.assertIn("Lire — EN ✔ | FR ✘ | AR ✘", texts)
        self.assertEqual(locked.filename, "carnet-Haddad-Lina.pdf")

        unlocked = load_student_carnet(student_id=self.student.id, template_id=self.template.id, password="secret")
        self.assertFalse(unlocked.document.use_default_carnet)
        self.assertEqual(self._texts(unlocked.document), ["Version one"])

        self.template.refresh_from_db()
        self.assertNotEqual(self.template.export_password, "secret")
        assignment = TemplateAssignment.objects.create(template=self.template, student=self.student)
        staff_export = load_assignment_carnet(assignment.id)
        self.assertFalse(staff_export.document.use_default_carnet)

    def test_document_context_carries_student_data(self):
        assignment = TemplateAssignment.objects.create(
            template=self.template,
            student=self.student,
            data={"dropdown_1": "Acquis"},
        )
        document = build_render_document(template=self.template, student=self.student, assignment=assignment)
        self.assertEqual(document.context.student.class_name, "PS-A")
        self.assertEqual(document.context.data["dropdown_1"], "Acquis")
        self.assertEqual(document.title, "Carnet PS - Lina Haddad")
