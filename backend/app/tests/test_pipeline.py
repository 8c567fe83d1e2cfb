from pathlib import Path

import pytest

from app import models
from app.services.report_formats import FeedSync, GenerationPipeline, RoleAccessOracle
from app.services.report_formats.pipeline import build_files_manifest, write_report_xml_end
from app.services.tools.base import CommandResult

from .conftest import FAKE_GENERATE, OTHER_USER, USER, write_feed_format

REPORT_START = '<report id="r-1"><results/>'

ROWS_PARAM = (
    "<param><name>Rows</name><type>integer</type>"
    "<value>10</value><default>10</default></param>"
)


def _depends_on(format_id):
    return (
        "<param><name>Embedded</name><type>report_format_list</type>"
        f'<value><report_format id="{format_id}"/></value><default></default></param>'
    )


@pytest.fixture
def report(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    start = work / "report-start.xml"
    start.write_text(REPORT_START)
    return start, work / "report.xml", work


def _sync(db, assets):
    return FeedSync(db, assets=assets).reconcile_all()


def test_files_manifest():
    manifest = build_files_manifest("/tmp/x", {}, {})
    assert manifest == "<files><basedir>/tmp/x</basedir></files>"


def test_report_xml_end_escapes_param_values(tmp_path, db, assets):
    write_feed_format(
        assets.predefined_dir,
        "fmt",
        params_xml="<param><name>Title</name><type>string</type>"
        "<value>a &amp; b</value><default></default></param>",
    )
    _sync(db, assets)
    report_format = db.query(models.ReportFormat).filter_by(uuid="fmt").one()
    start = tmp_path / "start.xml"
    start.write_text("<report>")
    target = tmp_path / "out.xml"

    write_report_xml_end(start, target, report_format)

    assert target.read_text() == (
        "<report><report_format><param><name>Title</name>"
        "<value>a &amp; b</value></param></report_format></report>"
    )


def test_apply_runs_generator(pipeline, db, assets, report):
    write_feed_format(assets.predefined_dir, "simple", extension="txt", params_xml=ROWS_PARAM)
    _sync(db, assets)
    start, xml_file, work = report

    output = pipeline.apply(USER, "simple", start, xml_file, work)

    assert output is not None
    path = Path(output)
    assert path.parent == work
    assert path.name.startswith("simple-") and path.suffix == ".txt"
    content = path.read_text()
    assert content.startswith(
        REPORT_START
        + "<report_format><param><name>Rows</name><value>10</value></param></report_format></report>"
    )
    assert content.endswith(f"<files><basedir>{work}</basedir></files>")


def test_apply_renders_dependencies_first(pipeline, db, assets, report, settings_env):
    write_feed_format(assets.predefined_dir, "child", "Child", content_type="text/csv")
    write_feed_format(assets.predefined_dir, "parent", "Parent", params_xml=_depends_on("child"))
    _sync(db, assets)
    start, xml_file, work = report

    output = pipeline.apply(USER, "parent", start, xml_file, work)

    content = Path(output).read_text()
    assert content.count('<file id="child"') == 1
    assert 'content_type="text/csv"' in content
    assert 'report_format_name="Child"' in content
    # Dependency scratch directories are gone once the parent is done.
    assert list(Path(settings_env.scratch_dir).iterdir()) == []


def test_dependency_cycle_terminates(pipeline, db, assets, report):
    write_feed_format(assets.predefined_dir, "a", "A", params_xml=_depends_on("b"))
    write_feed_format(assets.predefined_dir, "b", "B", params_xml=_depends_on("a"))
    _sync(db, assets)
    start, xml_file, work = report

    output = pipeline.apply(USER, "a", start, xml_file, work)

    content = Path(output).read_text()
    assert '<file id="b"' in content
    assert '<file id="a"' not in content


def test_failed_dependency_is_left_out(pipeline, db, assets, report):
    write_feed_format(assets.predefined_dir, "parent", params_xml=_depends_on("missing"))
    _sync(db, assets)
    start, xml_file, work = report

    output = pipeline.apply(USER, "parent", start, xml_file, work)

    assert output is not None
    assert "<file " not in Path(output).read_text()


def test_missing_or_hidden_format_yields_nothing(pipeline, registry, report):
    registry.create(OTHER_USER, uuid="private", name="Private", files=[("generate", b"x")])
    start, xml_file, work = report

    assert pipeline.apply(USER, "nothing", start, xml_file, work) is None
    assert pipeline.apply(USER, "private", start, xml_file, work) is None


def test_inactive_format_yields_nothing(pipeline, registry, report):
    registry.create(USER, uuid="mine", name="Mine", files=[("generate", FAKE_GENERATE.encode())])
    start, xml_file, work = report

    assert pipeline.apply(USER, "mine", start, xml_file, work) is None

    registry.modify(USER, "mine", active=True)
    assert pipeline.apply(USER, "mine", start, xml_file, work) is not None


def test_non_executable_generator_yields_nothing(pipeline, db, assets, report):
    directory = write_feed_format(assets.predefined_dir, "plain")
    (directory / "generate").chmod(0o644)
    _sync(db, assets)
    start, xml_file, work = report

    assert pipeline.apply(USER, "plain", start, xml_file, work) is None
    assert sorted(p.name for p in work.iterdir()) == ["report-start.xml", "report.xml"]


class RecordingRunner:
    name = "recording"

    def __init__(self, spawned=True):
        self.calls = []
        self.spawned = spawned

    def run(self, cmd, *, workdir, stdout_path, handover_paths=()):
        self.calls.append((cmd, Path(workdir), Path(stdout_path), list(handover_paths)))
        if not self.spawned:
            return CommandResult(success=False, error="no such file", failure_reason="process-spawn-error")
        return CommandResult(success=False, return_code=3)


def test_generator_invocation(db, assets, report):
    write_feed_format(assets.predefined_dir, "simple")
    _sync(db, assets)
    runner = RecordingRunner()
    pipeline = GenerationPipeline(db, oracle=RoleAccessOracle(), assets=assets, runner=runner)
    start, xml_file, work = report

    output = pipeline.apply(USER, "simple", start, xml_file, work)

    # A non-zero exit still yields the output.
    assert output is not None
    (cmd, workdir, stdout_path, handover) = runner.calls[0]
    script = assets.predefined_format_dir("simple") / "generate"
    assert cmd[:2] == [str(script), str(xml_file)]
    assert cmd[2].startswith("<files>")
    assert workdir == script.parent
    assert str(stdout_path) == output
    assert handover == [work, xml_file]


def test_generator_that_cannot_start(db, assets, report):
    write_feed_format(assets.predefined_dir, "simple")
    _sync(db, assets)
    pipeline = GenerationPipeline(db, assets=assets, runner=RecordingRunner(spawned=False))
    start, xml_file, work = report

    assert pipeline.apply(USER, "simple", start, xml_file, work) is None
    assert not any(p.name.startswith("simple-") for p in work.iterdir())
