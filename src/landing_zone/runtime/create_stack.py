"""Create-or-update a single stack from a structured request.

The handler accepts the request shape used by the deployment pipeline's
"create stack" step and delegates to the StackUpsertEngine:

    {
        "stackName": "...",
        "stackCapabilities": ["CAPABILITY_NAMED_IAM"],
        "stackParameters": {"Key": "Value"},
        "stackTemplate": {"s3BucketName": "...", "s3ObjectKey": "..."},
        "accountId": "111111111111",
        "assumeRoleName": "PipelineRole",
        "region": "us-east-1",
        "ignoreAccountId": "222222222222",
        "ignoreRegion": "eu-west-1",
        "parametersTableName": "PipelineParameters"
    }
"""

import json
import logging
from typing import Any, Dict, Optional

from ..accounts.directory import AccountDirectory
from ..core.aws_client import AWSClientManager
from ..core.credentials import CredentialBroker
from ..core.errors import OrchestrationError
from ..core.retry import RetryPolicy
from ..deployment.targets import Exclusion, Target
from ..deployment.templates import TemplateLocation, TemplateStore
from ..deployment.upsert import StackUpsertEngine, UpsertRequest


logger = logging.getLogger(__name__)


def build_request(event: Dict[str, Any], home_region: str,
                  directory: Optional[AccountDirectory] = None) -> UpsertRequest:
    """Translate a structured request into an UpsertRequest.

    The target's account key is looked up in the directory by account id;
    when the account is not listed, the id itself addresses the target.

    Raises:
        OrchestrationError: When 'stackName' or 'stackTemplate' is missing
    """
    stack_name = event.get('stackName')
    if not stack_name:
        raise OrchestrationError("Request is missing 'stackName'")
    if 'stackTemplate' not in event:
        raise OrchestrationError("Request is missing 'stackTemplate'")

    account_id = event.get('accountId')
    account_key = account_id or 'self'
    if account_id and directory is not None:
        account = directory.get_by_id(account_id)
        if account is not None:
            account_key = account.key

    return UpsertRequest(
        target=Target(account_key=account_key, region=event.get('region') or home_region),
        stack_name=stack_name,
        template=TemplateLocation.from_dict(event['stackTemplate']),
        parameters=event.get('stackParameters') or {},
        capabilities=frozenset(event.get('stackCapabilities') or ()),
        account_id=account_id,
        role_name=event.get('assumeRoleName'),
        exclusion=Exclusion(
            ignore_account=event.get('ignoreAccountId'),
            ignore_region=event.get('ignoreRegion'),
        ),
    )


def handler(event: Dict[str, Any], context: Any = None,
            aws_client: Optional[AWSClientManager] = None,
            retry_policy: Optional[RetryPolicy] = None) -> Dict[str, Any]:
    """Create or update the requested stack.

    Args:
        event: Structured create-stack request
        context: Invocation context (unused)
        aws_client: Optional AWS client manager; created when omitted
        retry_policy: Optional retry policy for transient failures

    Returns:
        Dictionary with the target, stack id and outcome
    """
    logger.info("Creating stack...")
    logger.debug(json.dumps(event, indent=2, default=str))

    aws_client = aws_client or AWSClientManager(region_name=event.get('region'))
    home_region = aws_client.get_current_region()

    directory = None
    if event.get('parametersTableName'):
        directory = AccountDirectory.load_from_parameters_table(
            event['parametersTableName'], aws_client
        )

    request = build_request(event, home_region, directory)
    retry_policy = retry_policy or RetryPolicy()
    engine = StackUpsertEngine(
        aws_client,
        CredentialBroker(aws_client, retry_policy),
        TemplateStore(aws_client),
        retry_policy=retry_policy,
    )
    result = engine.upsert(request)

    return {
        'stackName': request.stack_name,
        'target': str(result.target),
        'stackId': result.stack_id,
        'outcome': result.outcome.value,
    }
