import numpy as np
import pytest

from align_app.core.errors import ConfigurationError, InvalidInputError
from align_app.core.fft_registration import (
    AlignmentParameters, OffsetResult, StackAligner, align, align_images,
    create_reference_context,
)
from align_app.core.peak_search import SearchBounds, SubPixelMethod
from align_app.core.translator import InterpolationMethod, translate
from align_app.core.window import WindowFunction
from align_app.utils.helpers import IntermediateRecorder


def exact_params(**kwargs):
    kwargs.setdefault('window_function', WindowFunction.NONE)
    kwargs.setdefault('subpixel_method', SubPixelMethod.NONE)
    return AlignmentParameters(**kwargs)


# ----------------------------------------------------------------------
# Offsets
# ----------------------------------------------------------------------

def test_self_alignment_is_zero_with_unit_score(textured_factory):
    img = textured_factory((90, 100))
    result = align_images(img, img, exact_params())
    assert (result.dx, result.dy) == (0.0, 0.0)
    assert result.score == pytest.approx(1.0, abs=1e-6)
    np.testing.assert_array_equal(result.aligned, img)


@pytest.mark.parametrize("window", [WindowFunction.NONE, WindowFunction.TUKEY])
def test_known_integer_shift_is_recovered(textured, window):
    target = translate(textured, -3, 2)
    result = align_images(textured, target, exact_params(window_function=window))
    assert (result.dx, result.dy) == (3.0, -2.0)
    assert result.integer_peak == (64 + 3, 64 - 2)
    assert 0 < result.score <= 1.1


@pytest.mark.parametrize("method", [SubPixelMethod.CUBIC, SubPixelMethod.GAUSSIAN])
def test_subpixel_refinement_stays_near_integer_shift(textured, method):
    target = translate(textured, -3, 2)
    result = align_images(textured, target, exact_params(subpixel_method=method))
    assert result.dx == pytest.approx(3.0, abs=0.2)
    assert result.dy == pytest.approx(-2.0, abs=0.2)
    assert result.subpixel_fitted
    assert result.interpolated_score is not None


def test_fractional_shift_is_refined(textured):
    target = translate(textured, -2.5, 1.5, InterpolationMethod.LINEAR)
    result = align_images(textured, target,
                          exact_params(subpixel_method=SubPixelMethod.GAUSSIAN))
    assert result.dx == pytest.approx(2.5, abs=0.25)
    assert result.dy == pytest.approx(-1.5, abs=0.25)


def test_cropped_target_is_located_centre_to_centre(textured):
    # 80x64 crop taken at (20, 30) of the 128x128 reference
    crop = textured[30:94, 20:100]
    result = align_images(textured, crop, exact_params())
    assert (result.dx, result.dy) == (-4.0, -2.0)
    assert result.score == pytest.approx(1.0, abs=1e-6)


def test_offset_respects_explicit_bounds(textured):
    target = translate(textured, -10, 0)
    bounds = SearchBounds(-3, 3, -3, 3)
    for method in SubPixelMethod:
        result = align_images(textured, target,
                              exact_params(bounds=bounds, subpixel_method=method))
        assert bounds.contains(result.dx, result.dy)


def test_default_bounds_allow_half_max_translation(textured):
    target = translate(textured, -20, 15)
    result = align_images(textured, target, exact_params())
    assert (result.dx, result.dy) == (20.0, -15.0)


def test_aligned_output_matches_reference_interior(textured):
    target = translate(textured, -3, 2)
    result = align_images(textured, target, exact_params())
    np.testing.assert_array_equal(result.aligned[5:-5, 5:-5],
                                  textured[5:-5, 5:-5])


def test_integer_input_keeps_dtype(textured):
    img = np.clip(textured, 0, 65535).astype(np.uint16)
    target = translate(img, -2, 1)
    result = align_images(img, target, exact_params())
    assert result.aligned.dtype == np.uint16
    assert (result.dx, result.dy) == (2.0, -1.0)


def test_unnormalised_correlation_finds_shift(textured):
    target = translate(textured, -3, 2)
    result = align_images(textured, target, exact_params(normalized=False))
    assert (result.dx, result.dy) == (3.0, -2.0)


def test_radial_window_finds_shift(textured):
    target = translate(textured, -3, 2)
    params = exact_params(window_function=WindowFunction.HANNING,
                          separable_window=False)
    result = align_images(textured, target, params)
    assert (result.dx, result.dy) == (3.0, -2.0)


# ----------------------------------------------------------------------
# Degenerate input
# ----------------------------------------------------------------------

@pytest.mark.parametrize("fill", [0.0, 37.0])
def test_target_without_signal_gives_zero_offset(textured, fill):
    target = np.full(textured.shape, fill)
    result = align_images(textured, target)
    assert (result.dx, result.dy) == (0.0, 0.0)
    assert result.score == 0.0
    np.testing.assert_array_equal(result.aligned, target)
    assert result.aligned is not target


def test_target_emptied_by_window_gives_zero_offset(textured):
    # Signal only on the first row, where every tapered window is zero
    edge_only = np.zeros(textured.shape)
    edge_only[0, :] = 500.0
    # Two columns wide: both columns get zero weight
    narrow = textured[:, 60:62]

    for target in (edge_only, narrow):
        recorder = IntermediateRecorder()
        result = align_images(textured, target, on_intermediate=recorder)
        assert (result.dx, result.dy) == (0.0, 0.0)
        assert result.score == 0.0
        assert not result.subpixel_fitted
        np.testing.assert_array_equal(result.aligned, target)
        assert not np.any(recorder.latest('correlation'))


def test_reference_without_signal_raises():
    with pytest.raises(InvalidInputError):
        create_reference_context(np.full((32, 32), 5.0))


@pytest.mark.parametrize("bad", [
    None,
    np.zeros((4, 4, 3)),
    np.zeros((0, 10)),
    np.array([[1.0, np.nan], [0.0, 2.0]]),
])
def test_invalid_reference_raises(bad):
    with pytest.raises(InvalidInputError):
        create_reference_context(bad)


def test_target_larger_than_canvas_raises(textured_factory):
    context = create_reference_context(textured_factory((64, 64)))
    with pytest.raises(InvalidInputError):
        align(context, textured_factory((100, 100)))


def test_missing_context_raises(textured):
    with pytest.raises(InvalidInputError):
        align(None, textured)


def test_inverted_bounds_raise_configuration_error(textured):
    params = AlignmentParameters(bounds=SearchBounds(5, -5, 0, 0))
    with pytest.raises(ConfigurationError):
        align_images(textured, textured, params)


def test_alignment_errors_are_value_errors(textured):
    with pytest.raises(ValueError):
        align_images(textured, np.zeros((3, 3, 3)))


# ----------------------------------------------------------------------
# Context, diagnostics and options
# ----------------------------------------------------------------------

def test_context_buffers_are_read_only(textured):
    context = create_reference_context(textured)
    assert context.size == 128
    assert context.normalized
    assert not context.canvas.data.flags.writeable
    assert not context.spectrum.flags.writeable
    assert not context.sums.s.flags.writeable


def test_context_covers_larger_target(textured_factory):
    context = create_reference_context(textured_factory((40, 40)),
                                       target_shape=(100, 70))
    assert context.size == 128
    assert context.ref_shape == (40, 40)


def test_unnormalised_context_has_no_sums(textured):
    context = create_reference_context(textured, normalized=False)
    assert context.sums is None
    assert not context.normalized


def test_one_context_serves_many_targets(textured):
    context = create_reference_context(textured, WindowFunction.NONE)
    params = exact_params()
    first = align(context, translate(textured, -1, 0), params)
    second = align(context, translate(textured, 0, 4), params)
    again = align(context, translate(textured, -1, 0), params)
    assert (first.dx, first.dy) == (1.0, 0.0)
    assert (second.dx, second.dy) == (0.0, -4.0)
    assert again.to_dict()['dx'] == first.to_dict()['dx']


def test_intermediate_buffers_are_reported(textured):
    recorder = IntermediateRecorder()
    align_images(textured, translate(textured, -3, 2), on_intermediate=recorder)
    assert recorder.names() == ['correlation', 'normalized_reference',
                                'normalized_target']
    assert recorder.latest('correlation').shape == (128, 128)
    target = recorder.latest('normalized_target')
    assert np.sum(target ** 2) == pytest.approx(1.0)


def test_keep_intermediates(textured):
    plain = align_images(textured, textured)
    assert plain.correlation is None and plain.normalized_target is None

    kept = align_images(textured, textured, keep_intermediates=True)
    assert kept.correlation.shape == (128, 128)
    assert kept.normalized_target.shape == (128, 128)
    assert np.abs(kept.correlation).max() <= 1.1


def test_translation_can_be_skipped(textured):
    result = align_images(textured, translate(textured, -3, 2),
                          exact_params(translate=False))
    assert result.aligned is None
    assert (result.dx, result.dy) == (3.0, -2.0)


def test_parameters_dict_round_trip():
    params = AlignmentParameters(
        window_function=WindowFunction.HANNING,
        bounds=SearchBounds(-8, 8, -4, 4),
        subpixel_method=SubPixelMethod.CUBIC,
        interpolation_method=InterpolationMethod.LINEAR,
        normalized=False,
        clip_output=True,
        translate=False,
        separable_window=False,
    )
    assert AlignmentParameters.from_dict(params.to_dict()) == params
    assert AlignmentParameters.from_dict({}) == AlignmentParameters()


def test_parameters_with_unknown_value_raise():
    with pytest.raises(ConfigurationError):
        AlignmentParameters.from_dict({'window_function': 'blackman'})


def test_result_to_dict():
    d = OffsetResult(dx=1.5, dy=-2.0, score=0.9, integer_peak=(65, 62)).to_dict()
    assert d['dx'] == 1.5
    assert d['integer_peak'] == [65, 62]
    assert 'aligned' not in d


# ----------------------------------------------------------------------
# Stack alignment
# ----------------------------------------------------------------------

SHIFTS = [(-1, 0), (2, 3), (0, -4), (-3, -1)]


def stack(base):
    return [translate(base, dx, dy) for dx, dy in SHIFTS]


def test_stack_alignment_sequential(textured):
    context = create_reference_context(textured, WindowFunction.NONE)
    aligner = StackAligner(context, exact_params())
    progress = []
    aligner.set_progress_callback(lambda pct, msg: progress.append(pct))

    results = aligner.run(stack(textured))

    assert [r.index for r in results] == [0, 1, 2, 3]
    assert [(r.dx, r.dy) for r in results] == [(-dx, -dy) for dx, dy in SHIFTS]
    assert progress[-1] == 100


def test_parallel_stack_matches_sequential(textured):
    context = create_reference_context(textured, WindowFunction.NONE)
    targets = stack(textured)
    sequential = StackAligner(context, exact_params()).run(targets)
    parallel = StackAligner(context, exact_params()).run(targets, max_workers=3)

    assert [r.index for r in parallel] == [0, 1, 2, 3]
    assert [(r.dx, r.dy, r.score) for r in parallel] == \
        [(r.dx, r.dy, r.score) for r in sequential]


def test_stack_alignment_can_be_cancelled(textured):
    context = create_reference_context(textured, WindowFunction.NONE)
    aligner = StackAligner(context, exact_params())

    def on_progress(percent, message):
        if percent >= 25:
            aligner.cancel()

    aligner.set_progress_callback(on_progress)
    results = aligner.run(stack(textured))

    assert aligner.cancelled
    assert 0 < len(results) < len(SHIFTS)
    assert [r.index for r in results] == list(range(len(results)))


def test_stack_aligner_requires_context():
    with pytest.raises(InvalidInputError):
        StackAligner(None)
