"""Shared fixtures for landing zone orchestration tests."""

import itertools
import threading
import time

import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError

from landing_zone.accounts.directory import Account, AccountDirectory
from landing_zone.core.aws_client import AWSClientManager
from landing_zone.core.credentials import CredentialBroker, DelegatedCredentials
from landing_zone.core.retry import RetryPolicy


ORCHESTRATOR_ACCOUNT_ID = '111111111111'


def client_error(code, message, operation='Operation'):
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


class FakeCloudFormation:
    """In-memory CloudFormation client with create/update/no-op semantics."""

    def __init__(self, region='us-east-1', mutation_delay=0.0):
        self.region = region
        self.mutation_delay = mutation_delay
        self.stacks = {}
        self.calls = []
        self._ids = itertools.count(1)
        self._guard = threading.Lock()
        self.active_mutations = 0
        self.max_active_mutations = 0

    def _find(self, name_or_id):
        for stack in self.stacks.values():
            if name_or_id in (stack['StackName'], stack['StackId']):
                return stack
        return None

    def _mutating(self):
        with self._guard:
            self.active_mutations += 1
            self.max_active_mutations = max(self.max_active_mutations, self.active_mutations)
        if self.mutation_delay:
            time.sleep(self.mutation_delay)
        with self._guard:
            self.active_mutations -= 1

    def describe_stacks(self, StackName):
        self.calls.append(('describe_stacks', StackName))
        stack = self._find(StackName)
        if stack is None:
            raise client_error('ValidationError', f'Stack with id {StackName} does not exist', 'DescribeStacks')
        return {'Stacks': [dict(stack)]}

    def create_stack(self, StackName, TemplateBody, Parameters, Capabilities):
        self.calls.append(('create_stack', StackName))
        self._mutating()
        if self._find(StackName) is not None:
            raise client_error('AlreadyExistsException', f'Stack [{StackName}] already exists', 'CreateStack')
        stack_id = f'arn:aws:cloudformation:{self.region}:{ORCHESTRATOR_ACCOUNT_ID}:stack/{StackName}/{next(self._ids)}'
        self.stacks[StackName] = {
            'StackName': StackName,
            'StackId': stack_id,
            'StackStatus': 'CREATE_COMPLETE',
            'TemplateBody': TemplateBody,
            'Parameters': Parameters,
            'Capabilities': Capabilities,
        }
        return {'StackId': stack_id}

    def update_stack(self, StackName, TemplateBody, Parameters, Capabilities):
        self.calls.append(('update_stack', StackName))
        self._mutating()
        stack = self._find(StackName)
        if (stack['TemplateBody'], stack['Parameters'], stack['Capabilities']) == \
                (TemplateBody, Parameters, Capabilities):
            raise client_error('ValidationError', 'No updates are to be performed.', 'UpdateStack')
        stack.update(
            TemplateBody=TemplateBody,
            Parameters=Parameters,
            Capabilities=Capabilities,
            StackStatus='UPDATE_COMPLETE',
        )
        return {'StackId': stack['StackId']}

    def delete_stack(self, StackName):
        self.calls.append(('delete_stack', StackName))
        stack = self._find(StackName)
        if stack is not None:
            del self.stacks[stack['StackName']]

    def operations(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def directory():
    """Directory with an operations, shared-services and workload account."""
    return AccountDirectory([
        Account(key='ops', id='111111111111', ou='core'),
        Account(key='shared', id='222222222222', ou='core'),
        Account(key='workload', id='333333333333', ou='apps'),
    ])


@pytest.fixture
def fake_cfn():
    return FakeCloudFormation()


@pytest.fixture
def mock_aws_client(fake_cfn):
    """AWS client manager returning the fake CloudFormation client."""
    client = Mock(spec=AWSClientManager)
    client.get_current_region.return_value = 'us-east-1'
    client.get_account_id.return_value = ORCHESTRATOR_ACCOUNT_ID
    client.get_partition.return_value = 'aws'
    client.get_client.return_value = fake_cfn
    client.get_delegated_client.return_value = fake_cfn
    return client


@pytest.fixture
def no_sleep_retry_policy():
    return RetryPolicy(max_attempts=3, base_delay_seconds=0, max_delay_seconds=0, sleep=Mock())


@pytest.fixture
def mock_broker():
    broker = Mock(spec=CredentialBroker)
    broker.acquire.return_value = DelegatedCredentials(
        access_key='AKIAEXAMPLE',
        secret_key='secret',
        session_token='token',
    )
    return broker
