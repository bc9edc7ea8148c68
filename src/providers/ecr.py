"""Image registry provider (ECR)."""

import logging
from dataclasses import dataclass

from common import NotFoundError
from providers.aws import AwsCli

logger = logging.getLogger(__name__)


@dataclass
class EcrRegistryProvider:
    """Container image repositories in the account's registry."""
    aws: AwsCli

    def registry_url(self, account_id: str) -> str:
        return f'{account_id}.dkr.ecr.{self.aws.region}.amazonaws.com'

    def repository_exists(self, name: str) -> bool:
        try:
            self.aws.call('ecr', 'describe-repositories', '--repository-names', name)
        except NotFoundError:
            return False
        return True

    def create_repository(self, name: str) -> None:
        self.aws.call(
            'ecr', 'create-repository', '--repository-name', name,
            '--image-scanning-configuration', 'scanOnPush=true',
        )

    def delete_repository(self, name: str) -> None:
        """Delete the repository including all images."""
        self.aws.call('ecr', 'delete-repository', '--repository-name', name, '--force')
