import pytest
from pydantic import ValidationError

from fhir_lifecycle.client import ResourceClient
from fhir_lifecycle.errors import FixtureFileError, PreconditionError, TransportError
from fhir_lifecycle.fixtures import capture_id, capture_version
from fhir_lifecycle.runner import FixtureStep, OrderedFixtureRunner, RunObserver
from fhir_lifecycle.schemas import FixtureState, OperationResult, StepStatus


def result(status_code, body=None):
    return OperationResult(status_code=status_code, body=body, method="GET", url="http://host/fhir/Thing")


@pytest.fixture
def fake_client(mocker):
    client = mocker.Mock(spec=ResourceClient)
    client.create.return_value = result(201, {"resourceType": "Condition", "id": "c1", "meta": {"versionId": "1"}})
    client.read.return_value = result(200, {"resourceType": "Condition", "id": "c1", "meta": {"versionId": "1"}})
    client.delete.return_value = result(204)
    client.validate.return_value = result(200, {"resourceType": "OperationOutcome"})
    return client


def lifecycle():
    return [
        FixtureStep(
            name="create",
            action=lambda client, state: client.create({"resourceType": "Condition"}),
            expected_status={201},
            extract=capture_id("Condition"),
        ),
        FixtureStep(
            name="read",
            action=lambda client, state: client.read(state.resource_id),
            expected_status={200},
            requires=("resource_id",),
            extract=capture_version,
        ),
        FixtureStep(
            name="validate",
            action=lambda client, state: client.validate({"resourceType": "Condition"}),
            expected_status={200},
        ),
        FixtureStep(
            name="delete",
            action=lambda client, state: client.delete(state.resource_id),
            expected_status={200, 204},
            requires=("resource_id",),
        ),
    ]


def test_all_steps_pass_and_state_flows(fake_client):
    summary = OrderedFixtureRunner("Condition", lifecycle()).run(fake_client)
    assert [o.status for o in summary.outcomes] == [StepStatus.PASSED] * 4
    assert (summary.passed, summary.failed, summary.skipped) == (4, 0, 0)
    assert summary.ok
    fake_client.read.assert_called_once_with("c1")
    fake_client.delete.assert_called_once_with("c1")


def test_steps_run_in_declaration_order(fake_client, mocker):
    manager = mocker.Mock()
    manager.attach_mock(fake_client, "client")
    OrderedFixtureRunner("Condition", lifecycle()).run(fake_client)
    called = [c[0] for c in manager.mock_calls]
    assert called == ["client.create", "client.read", "client.validate", "client.delete"]


def test_missing_id_skips_dependent_steps_without_calling_client(fake_client):
    fake_client.create.return_value = result(500, {"resourceType": "OperationOutcome", "id": "oo"})
    summary = OrderedFixtureRunner("Condition", lifecycle()).run(fake_client)
    statuses = {o.name: o.status for o in summary.outcomes}
    assert statuses == {
        "create": StepStatus.FAILED,
        "read": StepStatus.SKIPPED,
        "validate": StepStatus.PASSED,
        "delete": StepStatus.SKIPPED,
    }
    fake_client.read.assert_not_called()
    fake_client.delete.assert_not_called()
    skipped = summary.outcomes[1]
    assert "resource_id" in skipped.message
    assert skipped.result is None
    assert not summary.ok


def test_unexpected_status_is_recorded_and_run_continues(fake_client):
    fake_client.read.return_value = result(404, {"resourceType": "OperationOutcome"})
    summary = OrderedFixtureRunner("Condition", lifecycle()).run(fake_client)
    read = summary.outcomes[1]
    assert read.status == StepStatus.FAILED
    assert read.status_code == 404
    assert "got 404" in read.message
    assert summary.outcomes[3].status == StepStatus.PASSED


def test_transport_error_is_recorded_as_failure(fake_client):
    fake_client.validate.side_effect = TransportError("POST", "http://host/fhir/Condition/$validate", "refused")
    summary = OrderedFixtureRunner("Condition", lifecycle()).run(fake_client)
    validate = summary.outcomes[2]
    assert validate.status == StepStatus.FAILED
    assert "refused" in validate.message
    assert validate.status_code is None
    assert summary.outcomes[3].status == StepStatus.PASSED


def test_fixture_file_error_is_recorded_as_failure(fake_client):
    steps = [FixtureStep(
        name="from file",
        action=lambda client, state: client.create_from_external_document("missing.json"),
        expected_status={201},
    )]
    fake_client.create_from_external_document.side_effect = FixtureFileError(2, "No such file", "missing.json")
    summary = OrderedFixtureRunner("Condition", steps).run(fake_client)
    assert summary.outcomes[0].status == StepStatus.FAILED
    assert "missing.json" in summary.outcomes[0].message


def test_precondition_error_from_action_skips_step(fake_client):
    def read_version(client, state):
        raise PreconditionError("version_tag")

    steps = [FixtureStep(
        name="version read",
        action=read_version,
        expected_status={200},
    )]
    summary = OrderedFixtureRunner("Condition", steps).run(fake_client)
    assert summary.outcomes[0].status == StepStatus.SKIPPED
    assert "version_tag" in summary.outcomes[0].message


def test_verify_failure_marks_step_failed(fake_client):
    def verify(res, state):
        if res.lookup("code.text") != "expected":
            raise AssertionError("code.text mismatch")

    steps = [FixtureStep(
        name="read",
        action=lambda client, state: client.read("c1"),
        expected_status={200},
        verify=verify,
    )]
    summary = OrderedFixtureRunner("Condition", steps).run(fake_client)
    assert summary.outcomes[0].status == StepStatus.FAILED
    assert summary.outcomes[0].message == "code.text mismatch"


def test_verify_error_fails_step_and_run_continues(fake_client):
    def verify(res, state):
        return res.lookup("entry")[0]["resource"]["resourceType"]

    steps = lifecycle()
    steps[1] = steps[1].model_copy(update={"verify": verify})
    summary = OrderedFixtureRunner("Condition", steps).run(fake_client)
    read = summary.outcomes[1]
    assert read.status == StepStatus.FAILED
    assert read.message.startswith("TypeError: ")
    assert read.status_code == 200
    assert [o.status for o in summary.outcomes[2:]] == [StepStatus.PASSED, StepStatus.PASSED]
    fake_client.delete.assert_called_once_with("c1")


def test_extract_error_fails_step_and_run_continues(fake_client):
    def extract(res, state):
        raise ValueError("no usable id")

    steps = lifecycle()
    steps[0] = steps[0].model_copy(update={"extract": extract})
    summary = OrderedFixtureRunner("Condition", steps).run(fake_client)
    assert summary.outcomes[0].status == StepStatus.FAILED
    assert summary.outcomes[0].message == "ValueError: no usable id"
    assert summary.outcomes[1].status == StepStatus.SKIPPED
    assert len(summary.outcomes) == 4


def test_verify_skipped_when_status_mismatches(fake_client, mocker):
    verify = mocker.Mock()
    fake_client.read.return_value = result(500)
    steps = [FixtureStep(
        name="read",
        action=lambda client, state: client.read("c1"),
        expected_status={200},
        verify=verify,
    )]
    OrderedFixtureRunner("Condition", steps).run(fake_client)
    verify.assert_not_called()


def test_each_run_starts_with_fresh_state(fake_client):
    seen = []

    def record(client, state):
        seen.append(state.resource_id)
        return client.create({})

    steps = [FixtureStep(name="create", action=record, expected_status={201}, extract=capture_id("Condition"))]
    runner = OrderedFixtureRunner("Condition", steps)
    runner.run(fake_client)
    runner.run(fake_client)
    assert seen == [None, None]


def test_observers_receive_events_in_order(fake_client):
    events = []

    class Recorder(RunObserver):
        def run_started(self, name, steps):
            events.append(("started", name, len(steps)))

        def step_finished(self, outcome):
            events.append(("step", outcome.name, outcome.status))

        def run_finished(self, summary):
            events.append(("finished", summary.passed))

    runner = OrderedFixtureRunner("Condition", lifecycle())
    runner.add_observer(Recorder())
    runner.run(fake_client)
    assert events[0] == ("started", "Condition", 4)
    assert [e[1] for e in events[1:5]] == ["create", "read", "validate", "delete"]
    assert events[-1] == ("finished", 4)


def test_step_requires_expected_status():
    with pytest.raises(ValidationError):
        FixtureStep(name="bad", action=lambda client, state: None, expected_status=set())


def test_fixture_state_has():
    state = FixtureState()
    assert not state.has("resource_id")
    state.resource_id = ""
    assert not state.has("resource_id")
    state.resource_id = "1"
    assert state.has("resource_id")
    assert not state.has("no_such_field")
