"""Tests for DeploymentLogStream numbering, redaction and persistence."""

from unittest.mock import patch

from fastapi import HTTPException

from machina.modules.deployments.log_registry import LogBroadcastRegistry
from machina.modules.deployments.log_stream import DeploymentLogStream
from machina.modules.deployments.schemas import DeploymentState, DeploymentType
from machina.modules.deployments.service import DeploymentService


def _setup(fake_db, **kwargs):
    deployments = DeploymentService(fake_db)
    deployment = deployments.create_deployment(
        "res_1", DeploymentType.CREATE, DeploymentState.PLANNING, "resource-res_1", "system"
    )
    registry = LogBroadcastRegistry()
    stream = DeploymentLogStream(deployment.id, registry, deployments, **kwargs)
    return deployments, deployment, registry, stream


def test_sequences_start_after_existing_history(fake_db):
    _, _, _, stream = _setup(fake_db, flush_interval=3600, start_sequence=7)
    assert stream.info("first").sequence == 8
    assert stream.warn("second").sequence == 9


def test_callable_as_runner_sink(fake_db):
    _, deployment, registry, stream = _setup(fake_db, flush_interval=3600)
    stream("error", "Error: boom", "terraform")

    [record] = registry.history(deployment.id)
    assert (record.level, record.message, record.source) == ("error", "Error: boom", "terraform")


def test_secrets_are_masked(fake_db):
    _, deployment, registry, stream = _setup(fake_db, secrets=["s3cr3t"], flush_interval=3600)
    stream.add_secrets(["hc_token", ""])
    stream.info("using s3cr3t and hc_token")

    assert registry.history(deployment.id)[0].message == "using *** and ***"


def test_batches_until_flush(fake_db):
    deployments, deployment, _, stream = _setup(fake_db, flush_interval=3600)
    stream.info("one")
    stream.info("two")
    assert deployments.get_deployment_by_id(deployment.id).logs == []

    stream.flush()
    stored = deployments.get_deployment_by_id(deployment.id).logs
    assert [r.message for r in stored] == ["one", "two"]


def test_zero_interval_persists_every_record(fake_db):
    deployments, deployment, _, stream = _setup(fake_db, flush_interval=0)
    stream.info("one")
    assert [r.sequence for r in deployments.get_deployment_by_id(deployment.id).logs] == [1]


def test_failed_flush_requeues_records(fake_db):
    deployments, deployment, _, stream = _setup(fake_db, flush_interval=3600)
    stream.info("one")

    with patch.object(deployments, "append_logs", side_effect=HTTPException(status_code=500, detail="down")):
        stream.flush()
    stream.info("two")
    stream.flush()

    assert [r.message for r in deployments.get_deployment_by_id(deployment.id).logs] == ["one", "two"]
