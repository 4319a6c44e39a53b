"""AWS EC2 provider for the built-in kinds.

network maps to a VPC, subnet to a subnet, firewall to a security group and
vm to an EC2 instance. Every created resource is tagged with
``terrapin:resource`` so it can be traced back to its declaration, and with
``terrapin:token`` so a repeated create finds the resource an earlier attempt
made instead of making a second one.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from terrapin.providers.base import Provider, ProviderResource
from terrapin.state.models import ResourceState
from terrapin.utils.errors import ErrorCategory, ErrorContext, FatalProviderError, ProviderError
from terrapin.utils.logging import get_logger

logger = get_logger(__name__)

RESOURCE_TAG = 'terrapin:resource'
TOKEN_TAG = 'terrapin:token'

# Tags set by the provider itself, not part of the declared tags
MANAGED_TAGS = {'Name', RESOURCE_TAG, TOKEN_TAG}

DUPLICATE_RULE_CODE = 'InvalidPermission.Duplicate'

# Error codes meaning the resource is already gone
NOT_FOUND_CODES = {
    'InvalidVpcID.NotFound',
    'InvalidSubnetID.NotFound',
    'InvalidGroup.NotFound',
    'InvalidInstanceID.NotFound',
}

# Attributes that cannot change without replacing the resource
IMMUTABLE_ATTRIBUTES = {
    'network': {'cidr'},
    'subnet': {'network_id', 'cidr', 'zone'},
    'firewall': {'network_id', 'description'},
    'vm': {'subnet_id', 'image', 'key_name', 'user_data'},
}

TAG_RESOURCE_TYPES = {
    'network': 'vpc',
    'subnet': 'subnet',
    'firewall': 'security-group',
    'vm': 'instance',
}

# Describe call and response key used to find a resource by its token tag
TOKEN_LOOKUPS = {
    'network': ('describe_vpcs', 'Vpcs'),
    'subnet': ('describe_subnets', 'Subnets'),
    'firewall': ('describe_security_groups', 'SecurityGroups'),
}


def _error_code(error: Exception) -> str:
    """AWS error code of a ClientError, or of the ClientError behind a classified error."""
    if isinstance(error, ProviderError):
        error = error.cause
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', '')
    return ''


class AWSProvider(Provider):
    """Provider backed by the EC2 API."""

    name = "aws"

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        client: Any = None,
        wait: bool = True
    ):
        """Initialize AWS provider.

        Args:
            region: AWS region to use
            profile: AWS profile name to use
            client: Pre-built EC2 client (used by tests with a Stubber)
            wait: Wait for instances to reach their target state
        """
        self.region = region
        self.profile = profile
        self.wait = wait
        self._client = client
        self._client_lock = threading.Lock()
        self._inflight: Dict[str, str] = {}

    @property
    def ec2_client(self):
        """EC2 client, created on first use."""
        with self._client_lock:
            if self._client is None:
                session = boto3.Session(profile_name=self.profile, region_name=self.region)
                # Retries are driven by the engine's retry policy
                self._client = session.client(
                    'ec2',
                    config=Config(
                        retries={'mode': 'standard', 'max_attempts': 1},
                        connect_timeout=10,
                        read_timeout=60
                    )
                )
            return self._client

    # Provider API

    def create(self, kind: str, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        handler = self._handlers(kind)['create']
        self._inflight[token] = kind
        try:
            return handler(name, attributes, token)
        finally:
            self._inflight.pop(token, None)

    def update(self, state: ResourceState, attributes: Dict[str, Any]) -> ProviderResource:
        changed = {
            key for key in set(attributes) | set(state.attributes)
            if attributes.get(key) != state.attributes.get(key)
        }
        immutable = sorted(changed & IMMUTABLE_ATTRIBUTES.get(state.kind, set()))
        if immutable:
            raise FatalProviderError(
                f"Cannot change {', '.join(immutable)} of {state.key} in place",
                context=ErrorContext(resource_id=state.key, kind=state.kind, operation='update'),
                suggestions=[f"Rename the resource to replace it, or restore the previous {immutable[0]}"]
            )

        if 'tags' in changed:
            self._update_tags(state.id, state.attributes.get('tags') or {}, attributes.get('tags') or {})

        return self._handlers(state.kind)['update'](state, attributes, changed)

    def delete(self, state: ResourceState) -> None:
        if not state.id:
            return
        try:
            self._handlers(state.kind)['delete'](state.id)
        except (ClientError, ProviderError) as e:
            if _error_code(e) not in NOT_FOUND_CODES:
                raise
            logger.info(f"{state.key} ({state.id}) was already deleted")

    def read(self, state: ResourceState) -> Optional[ProviderResource]:
        if not state.id:
            return None
        try:
            return self._handlers(state.kind)['read'](state.id)
        except (ClientError, ProviderError) as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return None
            raise

    def cancel(self, token: str) -> bool:
        """Terminate any instance launched with ``token``.

        Only instance launches carry a client token EC2 can be queried by, so
        other kinds cannot be cancelled.
        """
        if self._inflight.get(token) != 'vm':
            return False

        response = self.ec2_client.describe_instances(
            Filters=[{'Name': 'client-token', 'Values': [token]}]
        )
        instance_ids = [
            instance['InstanceId']
            for reservation in response.get('Reservations', [])
            for instance in reservation.get('Instances', [])
        ]
        if instance_ids:
            self.ec2_client.terminate_instances(InstanceIds=instance_ids)
            logger.warning(f"Terminated instances launched by cancelled call: {', '.join(instance_ids)}")
        return True

    def normalize_attributes(self, kind: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        normalized = dict(attributes)
        if 'tags' in normalized:
            normalized['tags'] = {k: str(v) for k, v in (normalized['tags'] or {}).items()}
        if kind == 'firewall' and 'ingress' in normalized:
            normalized['ingress'] = self._ingress_rules(self._ip_permissions(normalized['ingress']))
        if kind == 'vm' and 'firewall_ids' in normalized:
            normalized['firewall_ids'] = sorted(normalized['firewall_ids'] or [])
        return normalized

    # Dispatch

    def _handlers(self, kind: str) -> Dict[str, Callable]:
        handlers = {
            'network': {
                'create': self._create_network,
                'update': self._update_network,
                'delete': lambda pid: self.ec2_client.delete_vpc(VpcId=pid),
                'read': self._read_network,
            },
            'subnet': {
                'create': self._create_subnet,
                'update': self._update_subnet,
                'delete': lambda pid: self.ec2_client.delete_subnet(SubnetId=pid),
                'read': self._read_subnet,
            },
            'firewall': {
                'create': self._create_firewall,
                'update': self._update_firewall,
                'delete': lambda pid: self.ec2_client.delete_security_group(GroupId=pid),
                'read': self._read_firewall,
            },
            'vm': {
                'create': self._create_vm,
                'update': self._update_vm,
                'delete': self._delete_vm,
                'read': self._read_vm,
            },
        }
        if kind not in handlers:
            raise FatalProviderError(
                f"AWS provider does not manage kind '{kind}'",
                category=ErrorCategory.CONFIGURATION
            )
        return handlers[kind]

    def _tag_specifications(
        self,
        kind: str,
        name: str,
        tags: Optional[Dict[str, Any]],
        token: Optional[str] = None
    ) -> List[Dict]:
        all_tags = {'Name': name, **{k: str(v) for k, v in (tags or {}).items()}}
        all_tags[RESOURCE_TAG] = f"{kind}.{name}"
        if token:
            all_tags[TOKEN_TAG] = token
        return [
            {
                'ResourceType': TAG_RESOURCE_TYPES[kind],
                'Tags': [{'Key': k, 'Value': v} for k, v in all_tags.items()]
            }
        ]

    @staticmethod
    def _user_tags(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
        return {tag['Key']: tag['Value'] for tag in tags or [] if tag['Key'] not in MANAGED_TAGS}

    def _update_tags(self, resource_id: str, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        removed = [key for key in old if key not in new]
        if removed:
            self.ec2_client.delete_tags(
                Resources=[resource_id],
                Tags=[{'Key': key} for key in removed]
            )
        if new:
            self.ec2_client.create_tags(
                Resources=[resource_id],
                Tags=[{'Key': k, 'Value': str(v)} for k, v in new.items()]
            )

    def _find_by_token(self, kind: str, token: str) -> Optional[Dict[str, Any]]:
        """Description of the resource an earlier create with ``token`` made, if any."""
        operation, key = TOKEN_LOOKUPS[kind]
        response = getattr(self.ec2_client, operation)(
            Filters=[{'Name': f'tag:{TOKEN_TAG}', 'Values': [token]}]
        )
        found = response.get(key, [])
        if not found:
            return None
        logger.info(f"Reusing {kind} created by an earlier attempt with token {token}")
        return found[0]

    # network

    def _create_network(self, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        vpc = self._find_by_token('network', token)
        if vpc is None:
            vpc = self.ec2_client.create_vpc(
                CidrBlock=attributes['cidr'],
                TagSpecifications=self._tag_specifications('network', name, attributes.get('tags'), token)
            )['Vpc']

        dns_support = bool(attributes.get('dns_support', True))
        self.ec2_client.modify_vpc_attribute(
            VpcId=vpc['VpcId'],
            EnableDnsSupport={'Value': dns_support}
        )
        return self._network_resource(vpc, dns_support)

    def _update_network(self, state: ResourceState, attributes: Dict[str, Any], changed) -> ProviderResource:
        if 'dns_support' in changed:
            self.ec2_client.modify_vpc_attribute(
                VpcId=state.id,
                EnableDnsSupport={'Value': bool(attributes.get('dns_support', True))}
            )
        return self._read_network(state.id)

    def _read_network(self, vpc_id: str) -> ProviderResource:
        vpc = self.ec2_client.describe_vpcs(VpcIds=[vpc_id])['Vpcs'][0]
        dns_support = self.ec2_client.describe_vpc_attribute(
            VpcId=vpc_id,
            Attribute='enableDnsSupport'
        )['EnableDnsSupport']['Value']
        return self._network_resource(vpc, dns_support)

    def _network_resource(self, vpc: Dict[str, Any], dns_support: bool) -> ProviderResource:
        vpc_id = vpc['VpcId']
        return ProviderResource(
            id=vpc_id,
            outputs={'id': vpc_id, 'cidr': vpc['CidrBlock']},
            attributes={
                'cidr': vpc['CidrBlock'],
                'dns_support': dns_support,
                'tags': self._user_tags(vpc.get('Tags')),
            }
        )

    # subnet

    def _create_subnet(self, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        subnet = self._find_by_token('subnet', token)
        if subnet is None:
            params = {
                'VpcId': attributes['network_id'],
                'CidrBlock': attributes['cidr'],
                'TagSpecifications': self._tag_specifications('subnet', name, attributes.get('tags'), token),
            }
            if attributes.get('zone'):
                params['AvailabilityZone'] = attributes['zone']
            subnet = self.ec2_client.create_subnet(**params)['Subnet']

        if attributes.get('public_ip_on_launch'):
            self.ec2_client.modify_subnet_attribute(
                SubnetId=subnet['SubnetId'],
                MapPublicIpOnLaunch={'Value': True}
            )
            subnet = {**subnet, 'MapPublicIpOnLaunch': True}
        return self._subnet_resource(subnet)

    def _update_subnet(self, state: ResourceState, attributes: Dict[str, Any], changed) -> ProviderResource:
        if 'public_ip_on_launch' in changed:
            self.ec2_client.modify_subnet_attribute(
                SubnetId=state.id,
                MapPublicIpOnLaunch={'Value': bool(attributes.get('public_ip_on_launch'))}
            )
        return self._read_subnet(state.id)

    def _read_subnet(self, subnet_id: str) -> ProviderResource:
        subnet = self.ec2_client.describe_subnets(SubnetIds=[subnet_id])['Subnets'][0]
        return self._subnet_resource(subnet)

    def _subnet_resource(self, subnet: Dict[str, Any]) -> ProviderResource:
        subnet_id = subnet['SubnetId']
        return ProviderResource(
            id=subnet_id,
            outputs={
                'id': subnet_id,
                'cidr': subnet['CidrBlock'],
                'zone': subnet.get('AvailabilityZone'),
            },
            attributes={
                'network_id': subnet.get('VpcId'),
                'cidr': subnet['CidrBlock'],
                'zone': subnet.get('AvailabilityZone'),
                'public_ip_on_launch': bool(subnet.get('MapPublicIpOnLaunch')),
                'tags': self._user_tags(subnet.get('Tags')),
            }
        )

    # firewall

    @staticmethod
    def _ip_permissions(ingress: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        permissions = []
        for rule in ingress or []:
            from_port = rule.get('from_port', rule.get('port'))
            to_port = rule.get('to_port', from_port)
            permission = {
                'IpProtocol': str(rule.get('protocol', 'tcp')),
                'IpRanges': [{'CidrIp': rule.get('cidr', '0.0.0.0/0')}],
            }
            if from_port is not None:
                permission['FromPort'] = int(from_port)
                permission['ToPort'] = int(to_port)
            permissions.append(permission)
        return permissions

    @staticmethod
    def _ingress_rules(permissions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Ingress rules, one per address range, in a stable order."""
        rules = []
        for permission in permissions:
            for ip_range in permission.get('IpRanges', []):
                rule = {'protocol': permission['IpProtocol'], 'cidr': ip_range['CidrIp']}
                if 'FromPort' in permission:
                    rule['from_port'] = permission['FromPort']
                    rule['to_port'] = permission['ToPort']
                rules.append(rule)
        return sorted(
            rules,
            key=lambda rule: (rule['protocol'], rule.get('from_port', -1), rule.get('to_port', -1), rule['cidr'])
        )

    def _authorize_ingress(self, group_id: str, permissions: List[Dict[str, Any]]) -> None:
        if not permissions:
            return
        try:
            self.ec2_client.authorize_security_group_ingress(
                GroupId=group_id,
                IpPermissions=permissions
            )
        except ClientError as e:
            if _error_code(e) != DUPLICATE_RULE_CODE:
                raise
            logger.info(f"Ingress rules of {group_id} are already authorized")

    def _create_firewall(self, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        permissions = self._ip_permissions(attributes.get('ingress'))
        group = self._find_by_token('firewall', token)
        if group is None:
            group_id = self.ec2_client.create_security_group(
                GroupName=name,
                Description=attributes.get('description') or f'Security group for {name}',
                VpcId=attributes['network_id'],
                TagSpecifications=self._tag_specifications('firewall', name, attributes.get('tags'), token)
            )['GroupId']
        else:
            group_id = group['GroupId']
            existing = self._ingress_rules(group.get('IpPermissions', []))
            permissions = [
                permission for permission in permissions
                if any(rule not in existing for rule in self._ingress_rules([permission]))
            ]

        self._authorize_ingress(group_id, permissions)
        return ProviderResource(id=group_id, outputs={'id': group_id})

    def _update_firewall(self, state: ResourceState, attributes: Dict[str, Any], changed) -> ProviderResource:
        if 'ingress' in changed:
            old_permissions = self._ip_permissions(state.attributes.get('ingress'))
            if old_permissions:
                self.ec2_client.revoke_security_group_ingress(
                    GroupId=state.id,
                    IpPermissions=old_permissions
                )
            self._authorize_ingress(state.id, self._ip_permissions(attributes.get('ingress')))
        return self._read_firewall(state.id)

    def _read_firewall(self, group_id: str) -> ProviderResource:
        group = self.ec2_client.describe_security_groups(GroupIds=[group_id])['SecurityGroups'][0]
        return ProviderResource(
            id=group_id,
            outputs={'id': group_id},
            attributes={
                'network_id': group.get('VpcId'),
                'description': group.get('Description'),
                'ingress': self._ingress_rules(group.get('IpPermissions', [])),
                'tags': self._user_tags(group.get('Tags')),
            }
        )

    # vm

    def _create_vm(self, name: str, attributes: Dict[str, Any], token: str) -> ProviderResource:
        params = {
            'ImageId': attributes['image'],
            'InstanceType': attributes['size'],
            'SubnetId': attributes['subnet_id'],
            'MinCount': 1,
            'MaxCount': 1,
            'ClientToken': token,
            'TagSpecifications': self._tag_specifications('vm', name, attributes.get('tags'), token),
        }
        if attributes.get('firewall_ids'):
            params['SecurityGroupIds'] = list(attributes['firewall_ids'])
        if attributes.get('key_name'):
            params['KeyName'] = attributes['key_name']
        if attributes.get('user_data'):
            params['UserData'] = attributes['user_data']

        instance = self.ec2_client.run_instances(**params)['Instances'][0]
        instance_id = instance['InstanceId']

        if self.wait:
            self.ec2_client.get_waiter('instance_running').wait(InstanceIds=[instance_id])
            return self._read_vm(instance_id)
        return self._instance_resource(instance)

    def _update_vm(self, state: ResourceState, attributes: Dict[str, Any], changed) -> ProviderResource:
        if 'firewall_ids' in changed:
            self.ec2_client.modify_instance_attribute(
                InstanceId=state.id,
                Groups=list(attributes.get('firewall_ids') or [])
            )

        if 'size' in changed:
            # Instance type can only change while stopped
            self.ec2_client.stop_instances(InstanceIds=[state.id])
            self.ec2_client.get_waiter('instance_stopped').wait(InstanceIds=[state.id])
            self.ec2_client.modify_instance_attribute(
                InstanceId=state.id,
                InstanceType={'Value': attributes['size']}
            )
            self.ec2_client.start_instances(InstanceIds=[state.id])
            if self.wait:
                self.ec2_client.get_waiter('instance_running').wait(InstanceIds=[state.id])

        return self._read_vm(state.id)

    def _delete_vm(self, instance_id: str) -> None:
        self.ec2_client.terminate_instances(InstanceIds=[instance_id])
        if self.wait:
            self.ec2_client.get_waiter('instance_terminated').wait(InstanceIds=[instance_id])

    def _read_vm(self, instance_id: str) -> Optional[ProviderResource]:
        response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                if instance.get('State', {}).get('Name') == 'terminated':
                    return None
                return self._instance_resource(instance)
        return None

    def _instance_resource(self, instance: Dict[str, Any]) -> ProviderResource:
        instance_id = instance['InstanceId']
        observed = {
            'image': instance.get('ImageId'),
            'size': instance.get('InstanceType'),
            'subnet_id': instance.get('SubnetId'),
            'key_name': instance.get('KeyName'),
        }
        attributes = {name: value for name, value in observed.items() if value is not None}
        if 'SecurityGroups' in instance:
            attributes['firewall_ids'] = sorted(group['GroupId'] for group in instance['SecurityGroups'])
        if 'Tags' in instance:
            attributes['tags'] = self._user_tags(instance['Tags'])

        return ProviderResource(
            id=instance_id,
            outputs={
                'id': instance_id,
                'private_ip': instance.get('PrivateIpAddress'),
                'public_ip': instance.get('PublicIpAddress'),
                'state': instance.get('State', {}).get('Name'),
            },
            attributes=attributes
        )
