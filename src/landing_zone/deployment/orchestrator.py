"""Deployment orchestration across many targets.

This module fans stack upserts out over every resolved target and
collects a batch report. A failure scoped to one target never stops its
siblings; only run-wide setup failures (such as an unreadable shared
template) abort the whole deployment.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from botocore.exceptions import BotoCoreError, ClientError

from ..accounts.directory import AccountDirectory
from ..core.errors import OrchestrationError, UnknownAccount
from .registry import StackRegistry
from .targets import Exclusion, OwnershipRule, Target, TargetResolver
from .templates import TemplateLocation
from .upsert import StackUpsertEngine, UpsertOutcome, UpsertRequest, UpsertResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TargetFailure:
    """A failed target with enough detail to decide on a retry."""

    target: Target
    error_kind: str
    message: str
    retry_safe: bool


@dataclass
class BatchReport:
    """Per-target outcomes of one deployment."""

    successes: List[UpsertResult] = field(default_factory=list)
    failures: List[TargetFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def retry_safe(self) -> bool:
        """Whether re-running the whole deployment is safe."""
        return all(failure.retry_safe for failure in self.failures)

    def outcomes(self, outcome: UpsertOutcome) -> List[UpsertResult]:
        return [result for result in self.successes if result.outcome is outcome]

    def merge(self, other: 'BatchReport') -> 'BatchReport':
        self.successes.extend(other.successes)
        self.failures.extend(other.failures)
        self.warnings.extend(other.warnings)
        return self

    def summary(self) -> Dict[str, Any]:
        """Get a serializable summary of the batch."""
        return {
            'status': 'SUCCESS' if self.ok else 'FAILED',
            'retry_safe': self.retry_safe,
            'successes': [
                {
                    'target': str(result.target),
                    'stack_id': result.stack_id,
                    'outcome': result.outcome.value,
                }
                for result in sorted(self.successes, key=lambda r: r.target)
            ],
            'failures': [
                {
                    'target': str(failure.target),
                    'error_kind': failure.error_kind,
                    'message': failure.message,
                    'retry_safe': failure.retry_safe,
                }
                for failure in sorted(self.failures, key=lambda f: f.target)
            ],
            'warnings': list(self.warnings),
        }


class DeploymentOrchestrator:
    """Deploys stacks to every target an ownership rule resolves to."""

    def __init__(self, directory: AccountDirectory, resolver: TargetResolver,
                 engine: StackUpsertEngine, max_workers: int = 8) -> None:
        """Initialize the orchestrator.

        Args:
            directory: Account inventory for this run
            resolver: Target resolver
            engine: Stack upsert engine
            max_workers: Maximum number of targets deployed concurrently
        """
        self.directory = directory
        self.resolver = resolver
        self.engine = engine
        self.max_workers = max_workers

    def deploy(self, rule: OwnershipRule, stack_name: str,
               template: Union[TemplateLocation, str],
               parameters: Optional[Mapping[str, str]] = None,
               capabilities: Iterable[str] = (),
               role_name: Optional[str] = None,
               exclusion: Optional[Exclusion] = None) -> BatchReport:
        """Create or update one stack in every target of a rule.

        Args:
            rule: Ownership rule selecting the targets
            stack_name: Name of the stack in every target
            template: Template location or inline template body
            parameters: Stack parameters
            capabilities: Acknowledged CloudFormation capabilities
            role_name: Role assumed in accounts other than the orchestrator's
            exclusion: Optional account/region exclusion

        Returns:
            BatchReport with successes, failures and warnings

        Raises:
            TemplateNotFound: When the shared template cannot be resolved
        """
        report = BatchReport()
        exclusion = exclusion or Exclusion()

        try:
            targets = self.resolver.resolve(
                rule, self.directory, exclude=exclusion.as_predicate(self.directory)
            )
        except UnknownAccount as e:
            logger.warning(f"Cannot resolve targets for stack {stack_name}: {e}")
            report.warnings.append(str(e))
            return report

        if not targets:
            report.warnings.append(f"No targets for stack {stack_name}")
            return report

        if isinstance(template, str):
            template = TemplateLocation.inline(template)
        template_body = self.engine.template_store.resolve(template)
        shared_template = TemplateLocation.inline(template_body)

        requests = [
            UpsertRequest(
                target=target,
                stack_name=stack_name,
                template=shared_template,
                parameters=parameters or {},
                capabilities=frozenset(capabilities),
                account_id=self.directory.get(target.account_key).id,
                role_name=role_name,
                exclusion=exclusion,
            )
            for target in targets
        ]
        return report.merge(self.run(requests))

    def deploy_registry(self, registry: StackRegistry,
                        capabilities: Iterable[str] = (),
                        role_name: Optional[str] = None) -> BatchReport:
        """Deploy every non-empty stack handle of a registry.

        Args:
            registry: Registry whose handles carry resources
            capabilities: Acknowledged CloudFormation capabilities
            role_name: Role assumed in accounts other than the orchestrator's

        Returns:
            BatchReport with successes, failures and warnings
        """
        requests = []
        for handle in registry.handles():
            if handle.is_empty:
                logger.debug(f"Stack {handle.name} has no resources, not deploying")
                continue
            requests.append(UpsertRequest(
                target=handle.target,
                stack_name=handle.name,
                template=TemplateLocation.inline(handle.render_template()),
                capabilities=frozenset(capabilities),
                account_id=self.directory.get(handle.account_key).id,
                role_name=role_name,
            ))
        return self.run(requests)

    def run(self, requests: List[UpsertRequest]) -> BatchReport:
        """Run upserts concurrently and collect their outcomes."""
        report = BatchReport()
        if not requests:
            return report

        workers = max(1, min(self.max_workers, len(requests)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                (request, executor.submit(self.engine.upsert, request))
                for request in requests
            ]
            for request, future in futures:
                try:
                    report.successes.append(future.result())
                except OrchestrationError as e:
                    report.failures.append(self._failure(request.target, e.kind, e, e.retry_safe))
                except (ClientError, BotoCoreError) as e:
                    report.failures.append(self._failure(request.target, 'AWSError', e, True))
                except Exception as e:
                    # A bug in one target must not discard its siblings' results
                    report.failures.append(self._failure(request.target, 'UnexpectedError', e, False))

        logger.info(
            f"Deployed {len(report.successes)} of {len(requests)} targets, "
            f"{len(report.failures)} failed"
        )
        return report

    def _failure(self, target: Target, kind: str, error: Exception,
                 retry_safe: bool) -> TargetFailure:
        logger.error(f"Deployment to {target} failed with {kind}: {error}")
        return TargetFailure(target=target, error_kind=kind, message=str(error), retry_safe=retry_safe)
