"""AWS adapters: typed-error boto3 clients and custom-resource response delivery."""

from adprov.aws.cfn_response import CfnResponseClient, ResponseStatus, build_response_body
from adprov.aws.client import AwsApiClient, AwsClients, classify_error_code, to_remote_error

__all__ = [
    "AwsApiClient",
    "AwsClients",
    "classify_error_code",
    "to_remote_error",
    "CfnResponseClient",
    "ResponseStatus",
    "build_response_body",
]
