"""Release controller: resolve a tag, build and publish, deploy.

The controller wires the RefTagResolver, BuildGraphExecutor, registry
backend and ServiceOrchestrator together.  Every collaborator and input
(ref, credentials, repository) is passed in explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from flotilla.backends.base import RegistryBackend, RegistryError
from flotilla.core.build_executor import BuildGraphExecutor, StageListener
from flotilla.core.ref_tags import RefTagResolver
from flotilla.core.service_machine import TransitionListener
from flotilla.core.service_orchestrator import ServiceOrchestrator
from flotilla.descriptors import render_deployment
from flotilla.models.artifacts import PublishedArtifact
from flotilla.models.builds import (
    BuildGraphDescriptor,
    BuildReport,
    BuildStageDefinition,
    StageState,
)
from flotilla.models.release import ReleaseTag
from flotilla.models.services import DeploymentDescriptor, DeploymentReport

logger = logging.getLogger(__name__)


class ReleaseController:
    """Runs the release pipeline end to end.

    Parameters
    ----------
    resolver:
        Maps refs to release tags.
    executor:
        Build graph executor used by ``build``.
    registry:
        Where terminal artifacts are pushed.  Publishing is skipped if None.
    orchestrator:
        Service orchestrator used by ``deploy``.
    repository:
        Image repository prefix; stage ``web`` with tag ``latest`` is
        published as ``<repository>/web:latest``.
    """

    def __init__(
        self,
        resolver: RefTagResolver,
        executor: BuildGraphExecutor | None = None,
        registry: RegistryBackend | None = None,
        orchestrator: ServiceOrchestrator | None = None,
        *,
        repository: str = "",
    ) -> None:
        self.resolver = resolver
        self.executor = executor
        self.registry = registry
        self.orchestrator = orchestrator
        self.repository = repository.rstrip("/")

    def resolve_tag(self, ref: str) -> ReleaseTag:
        return self.resolver.resolve(ref)

    def image_name(self, stage: str) -> str:
        return f"{self.repository}/{stage}" if self.repository else stage

    async def build(
        self,
        stages: BuildGraphDescriptor | Sequence[BuildStageDefinition],
        *,
        ref: str | None = None,
        tag: str | None = None,
        push: bool = True,
        listener: StageListener | None = None,
    ) -> BuildReport:
        """Build the graph and publish terminal artifacts under the tag.

        The tag is taken from *tag* if given, else resolved from *ref*.  A
        failed push marks that stage FAILED with the registry error; other
        stages are unaffected.
        """
        if self.executor is None:
            raise RuntimeError("ReleaseController has no build executor configured")
        if tag is None:
            tag = self.resolver.resolve(ref or "").value
        report = await self.executor.run(stages, tag=tag, listener=listener)
        if not push or self.registry is None:
            return report

        results = dict(report.results)
        published: list[PublishedArtifact] = []
        for stage, artifact in report.artifacts.items():
            image = f"{self.image_name(stage)}:{tag}"
            try:
                await self.registry.push(artifact, image)
            except RegistryError as exc:
                logger.error("Push of %s failed: %s", image, exc)
                results[stage] = results[stage].model_copy(
                    update={"state": StageState.FAILED, "error": f"RegistryError: {exc}"}
                )
                continue
            published.append(
                PublishedArtifact(artifact=artifact, tag=tag, repository=self.image_name(stage))
            )
        return report.model_copy(update={"results": results, "published": published})

    async def deploy(
        self,
        descriptor: DeploymentDescriptor,
        tag: str | None,
        *,
        force_recreate: bool = False,
        listener: TransitionListener | None = None,
    ) -> DeploymentReport:
        """Render image templates with ``VERSION=<tag>`` and start the services.

        With no tag, ``VERSION`` is unset and ``${VERSION:-default}`` falls
        back to its default.
        """
        if self.orchestrator is None:
            raise RuntimeError("ReleaseController has no orchestrator configured")
        rendered = render_deployment(descriptor, {"VERSION": tag} if tag else {})
        async for transition in self.orchestrator.stream(rendered, force_recreate=force_recreate):
            if listener is not None:
                listener(transition)
        return self.orchestrator.report()
