import pytest

from allometric import gradio_ui
from allometric.main import (
    PlotKind,
    PlotParams,
    _parse_plot_spec_json,
    _parse_plot_spec_kv,
)


def _default_plot() -> PlotParams:
    _, _, plots = gradio_ui.get_default_params()
    return plots[0]


def test_defaults_cover_every_plot_kind():
    _, _, plots = gradio_ui.get_default_params()
    assert [p.kind for p in plots] == list(PlotKind)


def test_parse_blank_and_simple_specs():
    default_plot = _default_plot()
    assert gradio_ui.parse_plot_specs(None, default_plot) == []
    assert gradio_ui.parse_plot_specs("   \n", default_plot) == []

    r = gradio_ui.parse_plot_specs("kind=QQ_LOG", default_plot)
    assert len(r) == 1 and r[0].kind is PlotKind.QQ_LOG

    r = gradio_ui.parse_plot_specs('{"kind":"distribution_raw","bins":40}', default_plot)
    assert r[0].kind is PlotKind.DISTRIBUTION_RAW
    assert r[0].bins == 40


def test_parse_multiline_example():
    multi = """kind=LOG_LOG_FIT,x_min=0,x_max=2,y_min=0,y_max=4
kind=distribution_log,bins=25
{"kind":"QQ_ORIGINAL","x_min":null}
"""
    r = gradio_ui.parse_plot_specs(multi, _default_plot())
    assert [p.kind for p in r] == [
        PlotKind.LOG_LOG_FIT,
        PlotKind.DISTRIBUTION_LOG,
        PlotKind.QQ_ORIGINAL,
    ]
    assert (r[0].x_min, r[0].x_max, r[0].y_min, r[0].y_max) == (0.0, 2.0, 0.0, 4.0)
    assert r[1].bins == 25
    assert r[2].x_min is None


def test_parse_error_mentions_line():
    with pytest.raises(ValueError, match="colour=red"):
        gradio_ui.parse_plot_specs("kind=QQ_LOG\ncolour=red", _default_plot())


def test_kv_parser_rejects_unknown_kind_and_bad_pair():
    default_plot = PlotParams()
    with pytest.raises(ValueError, match="Unknown plot kind"):
        _parse_plot_spec_kv("kind=PIE", default_plot)
    with pytest.raises(ValueError, match="Invalid key=value"):
        _parse_plot_spec_kv("kind", default_plot)


def test_json_parser_requires_object():
    with pytest.raises(ValueError):
        _parse_plot_spec_json("[1, 2]", PlotParams())
    with pytest.raises(ValueError, match="Unknown key"):
        _parse_plot_spec_json('{"layers": "ALL"}', PlotParams())


def test_parsing_does_not_mutate_default():
    default_plot = PlotParams(kind=PlotKind.LOG_LOG_FIT)
    _parse_plot_spec_kv("kind=QQ_LOG,x_min=1", default_plot)
    assert default_plot.kind is PlotKind.LOG_LOG_FIT
    assert default_plot.x_min is None


def test_header_map_text_parsing():
    assert gradio_ui.parse_header_map("") == {
        "Species": "species",
        "DBH": "explanatory",
        "Ptot": "response",
    }
    assert gradio_ui.parse_header_map("Diam:explanatory\nMass:response") == {
        "Diam": "explanatory",
        "Mass": "response",
    }
    with pytest.raises(ValueError):
        gradio_ui.parse_header_map("Diam=explanatory")
