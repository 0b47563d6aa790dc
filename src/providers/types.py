"""Resource type registry.

Each type declares its required properties, the output attributes the
provider returns after creation, and the properties that cannot change
in place (a change forces replacement).
"""

from dataclasses import dataclass

from errors import ValidationError


@dataclass(frozen=True)
class ResourceType:
    """Schema of a provider resource type.

    Attributes:
        name: Type tag used in stack files (e.g. 'storage-bucket')
        required: Properties that must be declared
        outputs: Output attributes available to references
        immutable: Properties fixed at creation (change => replace)
    """
    name: str
    required: frozenset = frozenset()
    outputs: tuple = ()
    immutable: frozenset = frozenset()

    def has_output(self, attribute: str) -> bool:
        return attribute in self.outputs


RESOURCE_TYPES: dict[str, ResourceType] = {t.name: t for t in (
    ResourceType(
        name='storage-bucket',
        outputs=('bucketName', 'arn', 'domainName'),
        immutable=frozenset({'bucketName'}),
    ),
    ResourceType(
        name='user-pool',
        outputs=('userPoolId', 'arn', 'providerUrl'),
        immutable=frozenset({'standardAttributes', 'userPoolName'}),
    ),
    ResourceType(
        name='user-pool-client',
        required=frozenset({'userPoolId'}),
        outputs=('clientId',),
        immutable=frozenset({'userPoolId', 'generateSecret'}),
    ),
    ResourceType(
        name='graphql-api',
        required=frozenset({'name', 'authenticationType'}),
        outputs=('apiId', 'arn', 'graphqlUrl'),
    ),
    ResourceType(
        name='api-key',
        required=frozenset({'apiId'}),
        outputs=('apiKey', 'id'),
        immutable=frozenset({'apiId'}),
    ),
    ResourceType(
        name='graphql-schema',
        required=frozenset({'apiId', 'definition'}),
        outputs=('status',),
        immutable=frozenset({'apiId'}),
    ),
    ResourceType(
        name='table',
        required=frozenset({'tableName', 'partitionKey'}),
        outputs=('tableName', 'arn', 'streamArn'),
        immutable=frozenset({'tableName', 'partitionKey', 'sortKey'}),
    ),
    ResourceType(
        name='iam-role',
        required=frozenset({'assumedBy'}),
        outputs=('roleName', 'arn'),
        immutable=frozenset({'roleName'}),
    ),
    ResourceType(
        name='data-source',
        required=frozenset({'apiId', 'name', 'type'}),
        outputs=('name', 'dataSourceArn'),
        immutable=frozenset({'apiId', 'name'}),
    ),
    ResourceType(
        name='resolver',
        required=frozenset({'apiId', 'typeName', 'fieldName', 'dataSourceName'}),
        outputs=('resolverArn',),
        immutable=frozenset({'apiId', 'typeName', 'fieldName'}),
    ),
)}


def get_type(name: str) -> ResourceType:
    """Look up a resource type by tag.

    Raises:
        ValidationError: If the type is not registered
    """
    try:
        return RESOURCE_TYPES[name]
    except KeyError:
        raise ValidationError(
            f"Unknown resource type '{name}'. "
            f"Available: {', '.join(sorted(RESOURCE_TYPES))}"
        ) from None


def list_types() -> list[str]:
    return sorted(RESOURCE_TYPES)
