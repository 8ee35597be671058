"""Tests for the image-to-tensor preprocessing pipeline."""

from __future__ import annotations

import base64
import textwrap
from typing import TYPE_CHECKING

import numpy as np
import pytest

from snapclassify.errors import DecodeError
from snapclassify.ml.preprocessing import ImagePreprocessor, resize_bilinear, split_data_url

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapclassify.ml.tensors import TensorRegistry


@pytest.fixture()
def preprocessor(registry: TensorRegistry) -> ImagePreprocessor:
    return ImagePreprocessor(registry, max_image_pixels=4_000_000)


class TestDecodeAndNormalize:
    def test_white_rgba_image_becomes_all_ones(
        self,
        preprocessor: ImagePreprocessor,
        registry: TensorRegistry,
        solid_image_b64: Callable[..., str],
    ) -> None:
        image_b64 = solid_image_b64(10, 10, (255, 255, 255, 255), fmt="PNG")

        tensor = preprocessor.decode_and_normalize(image_b64, "image/png")

        assert tensor.shape == (1, 224, 224, 3)
        assert tensor.dtype == np.float32
        np.testing.assert_allclose(tensor.data, 1.0, atol=1e-6)
        # Only the returned tensor is still live.
        assert registry.num_tensors == 1
        tensor.release()
        assert registry.num_tensors == 0

    @pytest.mark.parametrize(("width", "height"), [(1, 1), (37, 500), (640, 480), (224, 224)])
    def test_output_shape_is_fixed_for_any_resolution(
        self,
        preprocessor: ImagePreprocessor,
        solid_image_b64: Callable[..., str],
        width: int,
        height: int,
    ) -> None:
        with preprocessor.decode_and_normalize(solid_image_b64(width, height, (12, 200, 90))) as tensor:
            assert tensor.shape == (1, 224, 224, 3)
            assert tensor.data.min() >= 0.0
            assert tensor.data.max() <= 1.0

    def test_solid_color_png_matches_channel_bytes(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        image_b64 = solid_image_b64(31, 17, (200, 100, 50), fmt="PNG")

        with preprocessor.decode_and_normalize(image_b64, "image/png") as tensor:
            expected = np.array([200, 100, 50], dtype=np.float32) / 255
            np.testing.assert_allclose(tensor.data[0], np.broadcast_to(expected, (224, 224, 3)), atol=1e-6)

    def test_solid_color_jpeg_within_codec_tolerance(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        with preprocessor.decode_and_normalize(solid_image_b64(64, 48, (200, 100, 50))) as tensor:
            expected = np.array([200, 100, 50], dtype=np.float32) / 255
            np.testing.assert_allclose(tensor.data[0], np.broadcast_to(expected, (224, 224, 3)), atol=4 / 255)

    def test_alpha_channel_is_dropped(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        image_b64 = solid_image_b64(8, 8, (10, 20, 30, 0), fmt="PNG")

        with preprocessor.decode_and_normalize(image_b64, "image/png") as tensor:
            assert tensor.shape[-1] == 3
            np.testing.assert_allclose(tensor.data[0, 0, 0], [10 / 255, 20 / 255, 30 / 255], atol=1e-6)

    def test_data_url_prefix_supplies_mime_type(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        image_b64 = "data:image/png;base64," + solid_image_b64(5, 5, (0, 0, 0), fmt="PNG")

        with preprocessor.decode_and_normalize(image_b64) as tensor:
            assert tensor.shape == (1, 224, 224, 3)
            assert not tensor.data.any()

    def test_line_wrapped_base64_is_accepted(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        wrapped = "\r\n".join(textwrap.wrap(solid_image_b64(64, 48, (200, 100, 50)), 76)) + "\n"

        with preprocessor.decode_and_normalize(wrapped) as tensor:
            assert tensor.shape == (1, 224, 224, 3)

    @pytest.mark.parametrize("mime_type", ["application/octet-stream", "", "image/jpeg; charset=binary"])
    def test_generic_mime_type_falls_back_to_jpeg(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str], mime_type: str
    ) -> None:
        with preprocessor.decode_and_normalize(solid_image_b64(16, 16), mime_type) as tensor:
            assert tensor.shape == (1, 224, 224, 3)

    def test_custom_target_size(self, registry: TensorRegistry, solid_image_b64: Callable[..., str]) -> None:
        small = ImagePreprocessor(registry, target_size=(96, 128))
        with small.decode_and_normalize(solid_image_b64(20, 20)) as tensor:
            assert tensor.shape == (1, 96, 128, 3)


class TestDecodeErrors:
    def test_truncated_jpeg_raises_decode_error(
        self,
        preprocessor: ImagePreprocessor,
        registry: TensorRegistry,
        solid_image_b64: Callable[..., str],
    ) -> None:
        data = base64.b64decode(solid_image_b64(120, 80, (40, 80, 120)))
        truncated = base64.b64encode(data[: len(data) // 2]).decode("ascii")

        with pytest.raises(DecodeError):
            preprocessor.decode_and_normalize(truncated)
        assert registry.num_tensors == 0

    def test_header_only_raises_decode_error(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        data = base64.b64decode(solid_image_b64())
        with pytest.raises(DecodeError):
            preprocessor.decode_and_normalize(base64.b64encode(data[:10]).decode("ascii"))

    def test_invalid_base64_raises_decode_error(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(DecodeError, match="base64"):
            preprocessor.decode_and_normalize("this is not base64!!")

    def test_empty_payload_raises_decode_error(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(DecodeError, match="Empty"):
            preprocessor.decode_and_normalize("")

    def test_random_bytes_raise_decode_error(self, preprocessor: ImagePreprocessor) -> None:
        garbage = base64.b64encode(bytes(range(256)) * 4).decode("ascii")
        with pytest.raises(DecodeError):
            preprocessor.decode_and_normalize(garbage)

    def test_unsupported_mime_type(self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]) -> None:
        with pytest.raises(DecodeError, match="Unsupported image type"):
            preprocessor.decode_and_normalize(solid_image_b64(), "image/gif")

    def test_format_must_match_mime_type(
        self, preprocessor: ImagePreprocessor, solid_image_b64: Callable[..., str]
    ) -> None:
        png_b64 = solid_image_b64(fmt="PNG")
        with pytest.raises(DecodeError):
            preprocessor.decode_and_normalize(png_b64, "image/jpeg")

    def test_pixel_limit(self, registry: TensorRegistry, solid_image_b64: Callable[..., str]) -> None:
        limited = ImagePreprocessor(registry, max_image_pixels=100)
        with pytest.raises(DecodeError, match="exceeds the limit"):
            limited.decode_and_normalize(solid_image_b64(20, 20))
        assert registry.num_tensors == 0

    def test_malformed_data_url(self, preprocessor: ImagePreprocessor) -> None:
        with pytest.raises(DecodeError, match="data URL"):
            preprocessor.decode_and_normalize("data:image/png;base64")


class TestHelpers:
    def test_split_data_url(self) -> None:
        assert split_data_url("abcd") == ("abcd", None)
        assert split_data_url("data:image/png;base64,abcd") == ("abcd", "image/png")
        assert split_data_url("data:;base64,abcd") == ("abcd", None)

    def test_resize_constant_field_stays_constant(self) -> None:
        image = np.full((7, 13, 3), 0.25, dtype=np.float32)
        resized = resize_bilinear(image, (224, 224))
        assert resized.shape == (224, 224, 3)
        np.testing.assert_allclose(resized, 0.25, atol=1e-6)

    def test_resize_interpolates_between_samples(self) -> None:
        image = np.array([[[0.0], [1.0]]], dtype=np.float32)
        resized = resize_bilinear(image, (1, 4))
        np.testing.assert_allclose(resized[0, :, 0], [0.0, 0.5, 1.0, 1.0])

    def test_resize_downscale(self) -> None:
        image = np.arange(16, dtype=np.float32).reshape(4, 4, 1) / 15
        resized = resize_bilinear(image, (2, 2))
        np.testing.assert_allclose(resized[:, :, 0], [[0.0, 2 / 15], [8 / 15, 10 / 15]], atol=1e-6)
