"""Image selection, prompt building and request schema validation."""
import pytest
from pydantic import ValidationError

from dreamlens.schemas.generation import GenerateImageRequest, UserImageIn
from dreamlens.services.generations.prompts import SYSTEM_INSTRUCTION, TRENDS, build_generation_prompt
from dreamlens.services.generations.service import prepare_images


def _images(*scores):
    return [UserImageIn(base64=f"img{i}", qualityScore=s) for i, s in enumerate(scores)]


def _body(**config):
    return {
        "userImages": [{"base64": "data:image/png;base64,AAAA", "qualityScore": 80}] * 3,
        "config": {"trend": "MAGAZINE", **config},
    }


class TestPrepareImages:
    def test_keeps_best_five_above_threshold(self):
        selected = prepare_images(_images(90, 30, 50, 45, 80, 20, 99))
        assert [img.quality_score for img in selected] == [99, 90, 80, 50, 45]

    def test_falls_back_to_top_three(self):
        selected = prepare_images(_images(90, 10, 20, 30))
        assert [img.quality_score for img in selected] == [90, 30, 20]

    def test_missing_scores_rank_last(self):
        images = [UserImageIn(base64="a"), UserImageIn(base64="b", qualityScore=70), UserImageIn(base64="c")]
        assert prepare_images(images)[0].base64 == "b"


class TestBuildPrompt:
    def test_couple_asks_for_two_people(self):
        system, prompt = build_generation_prompt("COUPLE", 4)
        assert system == SYSTEM_INSTRUCTION
        assert "exactly 2 distinct person(s)" in prompt
        assert "the first 4 images" in prompt

    def test_user_details_are_sanitized(self):
        _, prompt = build_generation_prompt("MAGAZINE", 3, user_prompt="red\x00 dress\n", dominant_color="emerald")
        assert "Additional details: red  dress" in prompt
        assert "Dominant color: emerald." in prompt
        assert "\x00" not in prompt

    def test_unknown_trend(self):
        with pytest.raises(ValueError):
            build_generation_prompt("NOPE", 3)

    def test_every_trend_has_text(self):
        assert all(TRENDS[name].strip() for name in TRENDS)


class TestRequestSchema:
    def test_defaults(self):
        body = GenerateImageRequest.model_validate(_body())
        assert body.config.quality == "2K"
        assert body.config.ratio == "3:4"
        assert body.config.image_count == 1

    def test_trend_is_normalized(self):
        assert GenerateImageRequest.model_validate(_body(trend=" magazine ")).config.trend == "MAGAZINE"

    def test_data_url_is_split(self):
        image = GenerateImageRequest.model_validate(_body()).user_images[0]
        assert image.data == "AAAA"
        assert image.effective_mime_type == "image/png"

    def test_plain_base64_uses_declared_mime(self):
        image = UserImageIn(base64="AAAA", mimeType="image/webp")
        assert image.data == "AAAA"
        assert image.effective_mime_type == "image/webp"

    @pytest.mark.parametrize(
        "override",
        [
            {"trend": "UNKNOWN"},
            {"quality": "8K"},
            {"ratio": "2:1"},
            {"imageCount": 6},
            {"imageCount": 0},
        ],
    )
    def test_invalid_config(self, override):
        with pytest.raises(ValidationError):
            GenerateImageRequest.model_validate(_body(**override))

    def test_too_few_images(self):
        payload = _body()
        payload["userImages"] = payload["userImages"][:2]
        with pytest.raises(ValidationError):
            GenerateImageRequest.model_validate(payload)

    def test_score_out_of_range(self):
        with pytest.raises(ValidationError):
            UserImageIn(base64="a", qualityScore=150)

    def test_plain_data_urls_accepted(self):
        payload = _body()
        payload["userImages"] = ["data:image/png;base64,AAAA"] * 3
        request = GenerateImageRequest.model_validate(payload)
        assert request.user_images[0].data == "AAAA"
        assert request.user_images[0].effective_mime_type == "image/png"
