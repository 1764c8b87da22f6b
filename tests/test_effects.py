from media_tools.effects.processor import (
    EffectOptions,
    FilterStage,
    build_audio_filters,
    build_color_grading_filter,
    build_effects_plan,
    build_filter_complex,
    build_video_filter_stages,
    get_quality_options,
    should_apply_effects,
)


def test_explicit_neutral_values_do_not_apply_effects():
    options = EffectOptions.from_config({
        "brightness": 100,
        "contrast": 100,
        "saturation": 100,
        "filterType": "none",
        "enableEffects": False,
    })

    assert options.brightness == 100
    assert should_apply_effects(options) is False
    assert build_effects_plan(options).is_empty


def test_missing_values_are_not_provided():
    options = EffectOptions.from_config({})

    assert options.brightness is None
    assert options.speed is None
    assert should_apply_effects(options) is False


def test_single_deviating_value_opts_in_without_flags():
    options = EffectOptions.from_config({"saturation": 130})

    assert should_apply_effects(options) is True
    assert build_color_grading_filter(options) == "eq=saturation=1.3"


def test_enable_flag_alone_opts_in():
    assert should_apply_effects(EffectOptions.from_config({"enableEffects": True})) is True


def test_values_are_clamped():
    options = EffectOptions.from_config({"brightness": 500, "speed": 10, "hue": -400})

    assert options.brightness == 200
    assert options.speed == 4.0
    assert options.hue == -180


def test_color_grading_only_emits_deviating_args():
    options = EffectOptions(brightness=120, contrast=100, hue=30, temperature=150)

    assert build_color_grading_filter(options) == (
        "eq=brightness=0.2,hue=h=30,colorbalance=rs=0.5:gs=0:bs=-0.5"
    )


def test_stage_order_is_fixed():
    options = EffectOptions(
        grain=20,
        sharpen=50,
        filter_type="vintage",
        brightness=110,
        auto_crop=True,
        target_aspect_ratio="9:16",
        denoise=True,
        stabilization=True,
        speed=2.0,
    )

    names = [stage.name for stage in build_video_filter_stages(options)]

    assert names == ["speed", "stabilize", "denoise", "crop", "color_grade", "preset", "sharpen", "grain"]


def test_smooth_slow_motion_interpolates_before_setpts():
    stages = build_video_filter_stages(EffectOptions(speed=0.5, smooth_slow_motion=True))

    assert stages[0].expression.startswith("minterpolate=")
    assert stages[0].expression.endswith("setpts=2*PTS")


def test_crop_without_known_ratio_is_skipped():
    stages = build_video_filter_stages(EffectOptions(auto_crop=True, target_aspect_ratio="7:3"))

    assert stages == []


def test_filter_complex_labels_end_with_vout():
    graph = build_filter_complex([FilterStage("a", "eq=contrast=1.2"), FilterStage("b", "hue=h=10")])

    assert graph == "[0:v]eq=contrast=1.2[v1];[v1]hue=h=10[vout]"


def test_zero_volume_mutes_instead_of_negative_infinity():
    assert build_audio_filters(EffectOptions(audio_volume=0)) == ["volume=0"]


def test_volume_change_is_expressed_in_decibels():
    filters = build_audio_filters(EffectOptions(audio_volume=200))

    assert filters == ["volume=6.0206dB"]


def test_speed_change_chains_atempo():
    filters = build_audio_filters(EffectOptions(speed=4.0))

    assert filters == ["atempo=2.0", "atempo=2.00000"]


def test_quality_tiers():
    opts = get_quality_options(EffectOptions(quality="ultra", bitrate="4M", fps=30))

    assert opts[opts.index("-preset") + 1] == "slow"
    assert opts[opts.index("-crf") + 1] == "18"
    assert opts[opts.index("-b:v") + 1] == "4M"
    assert opts[opts.index("-r") + 1] == "30"
    assert "+faststart" in opts
    assert "yuv420p" in opts


def test_auto_bitrate_is_ignored():
    assert EffectOptions.from_config({"bitrate": "auto"}).bitrate is None
