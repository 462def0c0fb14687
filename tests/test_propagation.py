import pytest
from conftest import FakeCluster, deployment

from cdr.errors import ConflictError, FatalError, TransientError
from cdr.models import CorrectionPlan
from cdr.propagation import PropagationEngine, PropagationState, update_with_retry
from cdr.registry import LocalRegistry


@pytest.fixture
def chain():
    """base -> dev -> staging -> prod, plus an empty qa scope under base.

    staging carries a local replica override that prod inherited.
    """
    cluster = FakeCluster()
    reg = LocalRegistry(cluster=cluster)
    reg.create_scope("base")
    reg.create_scope("dev", "base")
    reg.create_scope("staging", "dev")
    reg.create_scope("prod", "staging")
    reg.create_scope("qa", "base")

    base = reg.create_unit("base", "web", deployment("web", replicas=3))
    dev = reg.create_unit("dev", "web", deployment("web", replicas=3), upstream_unit_id=base.id)
    staging = reg.create_unit("staging", "web", deployment("web", replicas=5), upstream_unit_id=dev.id)
    prod = reg.create_unit("prod", "web", deployment("web", replicas=5), upstream_unit_id=staging.id)
    return reg, cluster, {"base": base, "dev": dev, "staging": staging, "prod": prod}


def _replicas(reg, unit):
    return reg.get_unit(unit.id).data["spec"]["replicas"]


def _plan(unit, replicas):
    return CorrectionPlan(
        unit_id=unit.id, unit_slug=unit.slug, patch={"spec": {"replicas": replicas}}, explanation="scale"
    )


def test_push_upgrade_respects_local_overrides(chain):
    reg, cluster, units = chain

    result = PropagationEngine(reg).run(_plan(units["base"], 4))

    assert result.state is PropagationState.DONE
    assert _replicas(reg, units["base"]) == 4
    assert _replicas(reg, units["dev"]) == 4
    assert _replicas(reg, units["staging"]) == 5
    assert _replicas(reg, units["prod"]) == 4

    by_scope = {o.scope: o for o in result.outcomes}
    assert by_scope["base"].status == "origin"
    assert by_scope["dev"].status == "patched"
    assert by_scope["staging"].status == "skipped"
    assert by_scope["staging"].skipped_paths == ["spec.replicas"]
    assert by_scope["prod"].status == "patched"
    assert by_scope["qa"].status == "skipped"
    assert "no copy" in by_scope["qa"].note
    assert "staging: kept local override on spec.replicas" in result.notes

    assert cluster.applied[-1]["spec"]["replicas"] == 4


def test_origin_failure_stops_propagation(chain):
    reg, cluster, units = chain

    def refuse(document):
        raise FatalError("forbidden")

    cluster.apply = refuse

    result = PropagationEngine(reg).run(_plan(units["base"], 4))

    assert result.state is PropagationState.FAILED
    assert "forbidden" in result.error
    assert result.outcomes == []
    assert _replicas(reg, units["dev"]) == 3
    assert _replicas(reg, units["prod"]) == 5


def test_second_run_changes_nothing(chain):
    reg, _, units = chain
    PropagationEngine(reg).run(_plan(units["base"], 4))
    revisions = {k: reg.get_unit(u.id).revision for k, u in units.items()}

    result = PropagationEngine(reg).run(_plan(units["base"], 4))

    assert result.state is PropagationState.DONE
    assert result.patched_unit_ids == []
    assert {k: reg.get_unit(u.id).revision for k, u in units.items()} == revisions


def test_update_with_retry_refetches_on_conflict(chain):
    reg, _, units = chain
    stale = units["dev"]
    reg.update_unit(stale.id, {"metadata": {"labels": {"team": "a"}}})

    after = update_with_retry(reg, stale, {"spec": {"replicas": 7}})

    assert after.data["spec"]["replicas"] == 7
    assert after.data["metadata"]["labels"] == {"team": "a"}


def test_stale_revision_conflicts(chain):
    reg, _, units = chain
    reg.update_unit(units["dev"].id, {"spec": {"replicas": 2}})
    with pytest.raises(ConflictError):
        reg.update_unit(units["dev"].id, {"spec": {"replicas": 9}}, revision=units["dev"].revision)


def test_bulk_patch_can_propagate_downstream(chain):
    reg, _, units = chain

    patched = reg.bulk_patch("base", None, {"spec": {"replicas": 6}}, propagate_downstream=True)

    assert units["base"].id in patched
    assert units["dev"].id in patched
    assert _replicas(reg, units["staging"]) == 5
    assert _replicas(reg, units["prod"]) == 6


def test_unreachable_downstream_scope_does_not_stop_the_walk(chain):
    reg, _, units = chain
    qa = reg.create_unit("qa", "web", deployment("web", replicas=3), upstream_unit_id=units["base"].id)
    dev_id = reg.resolve_scope("dev").id
    list_units = reg.list_units

    def flaky(scope, predicate=None):
        if scope == dev_id:
            raise TransientError("connection reset")
        return list_units(scope, predicate)

    reg.list_units = flaky

    result = PropagationEngine(reg).run(_plan(units["base"], 4))

    assert result.state is PropagationState.DONE
    assert result.error is None
    by_scope = {o.scope: o for o in result.outcomes}
    assert by_scope["dev"].status == "failed"
    assert "connection reset" in by_scope["dev"].note
    assert by_scope["staging"].status == "skipped"
    assert by_scope["qa"].status == "patched"
    assert _replicas(reg, qa) == 4
    assert _replicas(reg, units["dev"]) == 3


def test_unlisted_scopes_keep_the_origin_correction(chain):
    reg, _, units = chain

    def down():
        raise TransientError("registry timeout")

    reg.list_scopes = down

    result = PropagationEngine(reg).run(_plan(units["base"], 4))

    assert result.state is PropagationState.DONE
    assert _replicas(reg, units["base"]) == 4
    assert _replicas(reg, units["dev"]) == 3
    assert result.outcomes[-1].status == "failed"
    assert "cannot list downstream scopes" in result.outcomes[-1].note
