"""Access policy provider (IAM)."""

import json
import logging
from dataclasses import dataclass

from common import NotFoundError, ProviderError
from providers.aws import AwsCli

logger = logging.getLogger(__name__)

# kind → (list-entities-for-policy section, name field, detach operation)
ATTACHMENT_KINDS = {
    'role': ('PolicyRoles', 'RoleName', 'detach-role-policy'),
    'user': ('PolicyUsers', 'UserName', 'detach-user-policy'),
    'group': ('PolicyGroups', 'GroupName', 'detach-group-policy'),
}


def bucket_access_policy(bucket: str) -> dict:
    """Policy document granting read/write access to one bucket."""
    return {
        'Version': '2012-10-17',
        'Statement': [
            {
                'Effect': 'Allow',
                'Action': [
                    's3:GetObject',
                    's3:PutObject',
                    's3:DeleteObject',
                    's3:ListBucket',
                    's3:GetBucketLocation',
                ],
                'Resource': [
                    f'arn:aws:s3:::{bucket}',
                    f'arn:aws:s3:::{bucket}/*',
                ],
            }
        ],
    }


@dataclass
class IamPolicyProvider:
    """Managed policies attached to workload identities."""
    aws: AwsCli

    @staticmethod
    def policy_arn(account_id: str, name: str) -> str:
        return f'arn:aws:iam::{account_id}:policy/{name}'

    def policy_exists(self, arn: str) -> bool:
        try:
            self.aws.call('iam', 'get-policy', '--policy-arn', arn)
        except NotFoundError:
            return False
        return True

    def create_policy(self, name: str, document: dict) -> str:
        arn = self.aws.call(
            'iam', 'create-policy', '--policy-name', name,
            '--policy-document', json.dumps(document),
            query='Policy.Arn',
        )
        if not arn:
            raise ProviderError("create-policy returned no ARN")
        return arn

    def attached_entities(self, arn: str) -> dict[str, list[str]]:
        """Roles, users and groups the policy is attached to."""
        entities = self.aws.call('iam', 'list-entities-for-policy', '--policy-arn', arn) or {}
        return {
            kind: [e[name_field] for e in entities.get(section) or []]
            for kind, (section, name_field, _) in ATTACHMENT_KINDS.items()
        }

    def detach_all(self, arn: str) -> list[str]:
        """Detach the policy from every role, user and group.

        Returns the detached entities as '<kind>/<name>'.
        """
        detached = []
        for kind, names in self.attached_entities(arn).items():
            _, _, operation = ATTACHMENT_KINDS[kind]
            for name in names:
                logger.info(f"  Detaching policy from {kind}: {name}")
                try:
                    self.aws.call('iam', operation, f'--{kind}-name', name, '--policy-arn', arn)
                except NotFoundError:
                    logger.debug(f"  {kind} {name} already detached")
                detached.append(f'{kind}/{name}')
        return detached

    def delete_non_default_versions(self, arn: str) -> list[str]:
        versions = self.aws.call(
            'iam', 'list-policy-versions', '--policy-arn', arn,
            query='Versions[?IsDefaultVersion==`false`].VersionId',
        ) or []
        for version in versions:
            self.aws.call('iam', 'delete-policy-version', '--policy-arn', arn, '--version-id', version)
        return versions

    def delete_policy(self, arn: str) -> None:
        self.aws.call('iam', 'delete-policy', '--policy-arn', arn)
