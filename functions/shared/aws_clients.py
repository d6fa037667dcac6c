"""
Centralized AWS client factory with lazy initialization.

Defers boto3 client/resource creation until first use so cold starts stay
cheap. Every billing Lambda shares the same clients for the life of the
execution environment.
"""

_dynamodb = None
_secretsmanager = None
_sns = None
_lambda = None


def get_dynamodb():
    """Get DynamoDB resource, creating it lazily on first use."""
    global _dynamodb
    if _dynamodb is None:
        import boto3
        _dynamodb = boto3.resource("dynamodb")
    return _dynamodb


def get_secretsmanager():
    """Get Secrets Manager client, creating it lazily on first use."""
    global _secretsmanager
    if _secretsmanager is None:
        import boto3
        _secretsmanager = boto3.client("secretsmanager")
    return _secretsmanager


def get_sns():
    """Get SNS client, creating it lazily on first use."""
    global _sns
    if _sns is None:
        import boto3
        _sns = boto3.client("sns")
    return _sns


def get_lambda():
    """Get Lambda client (used for deferred self-invocation)."""
    global _lambda
    if _lambda is None:
        import boto3
        _lambda = boto3.client("lambda")
    return _lambda


def reset_clients():
    """Reset all cached clients. Used in tests for clean state."""
    global _dynamodb, _secretsmanager, _sns, _lambda
    _dynamodb = None
    _secretsmanager = None
    _sns = None
    _lambda = None
