from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeBackendStore, FakeChain, Harness
from deploy_orchestrator.app import build_app_context, get_app_context
from deploy_orchestrator.credentials.chain import CredentialDelegationChain
from deploy_orchestrator.credentials.identity import WebIdentity
from deploy_orchestrator.credentials.trust import IdentityClaims
from deploy_orchestrator.domain.models import CredentialPurpose
from deploy_orchestrator.pipeline.collaborators import (
    CommandApplier,
    CommandBuilder,
    HttpHealthChecker,
)


@pytest.fixture
def clean_context():
    get_app_context.cache_clear()
    yield
    get_app_context.cache_clear()


@patch("deploy_orchestrator.app.load_settings")
@patch("deploy_orchestrator.app.RunHistoryStore")
def test_get_app_context_is_built_once(mock_store, mock_load_settings, settings, clean_context):
    mock_load_settings.return_value = settings

    first = get_app_context("deploy.yaml")
    second = get_app_context("deploy.yaml")

    assert first is second
    mock_load_settings.assert_called_once_with("deploy.yaml")
    mock_store.assert_called_once_with(settings.storage.history_path, wal=False)
    assert isinstance(first.runner._collab.builder, CommandBuilder)  # noqa: SLF001
    assert isinstance(first.runner._collab.applier, CommandApplier)  # noqa: SLF001
    assert isinstance(first.runner._collab.health, HttpHealthChecker)  # noqa: SLF001


@patch("deploy_orchestrator.app.load_web_identity")
@patch("deploy_orchestrator.app.RunHistoryStore")
def test_default_chain_factory_reads_identity_per_chain(mock_store, mock_identity, settings):
    mock_identity.return_value = WebIdentity(token="jwt", claims=IdentityClaims(subject="s"))
    context = build_app_context(settings)

    first = context.chain_factory()
    second = context.chain_factory()

    assert isinstance(first, CredentialDelegationChain)
    assert first is not second
    assert mock_identity.call_count == 2


@pytest.mark.asyncio
async def test_bootstrap_uses_bootstrap_tier_credential(settings, tmp_path, dev):
    chains: list[FakeChain] = []
    store = FakeBackendStore()
    factory = MagicMock(side_effect=lambda environment, credential: store)

    def chain_factory() -> FakeChain:
        chains.append(FakeChain())
        return chains[-1]

    context = build_app_context(
        settings,
        chain_factory=chain_factory,
        store_factory=factory,
        collaborators=Harness(settings).collaborators(),
    )
    try:
        state = await context.bootstrap(dev)
        assert state.exists
        assert chains[0].calls == [("dev", CredentialPurpose.BOOTSTRAP)]
        assert chains[0].discarded
        credential = factory.call_args.args[1]
        assert credential.tier.value == "bootstrap"

        await context.decommission(dev)
        assert store.buckets == {}
    finally:
        context.close()
