"""
Kubeconfig assembly. Pure: (cluster description, session credentials, region) → YAML.

The user entry runs `aws eks get-token` through the client.authentication
exec plugin with the session credentials in its environment, so kubectl
re-derives a cluster token from the short-lived session on every call.
"""

import yaml

from jitaccess.connectors.aws.eks_binder import ClusterDescription
from jitaccess.connectors.aws.sts_minter import SessionCredentials

EXEC_API_VERSION = "client.authentication.k8s.io/v1beta1"


def build_kubeconfig(cluster: ClusterDescription, credentials: SessionCredentials, region: str) -> dict:
    name = cluster.name
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{
            "name": name,
            "cluster": {
                "server": cluster.endpoint,
                "certificate-authority-data": cluster.certificate_authority,
            },
        }],
        "contexts": [{
            "name": name,
            "context": {"cluster": name, "user": name},
        }],
        "current-context": name,
        "users": [{
            "name": name,
            "user": {
                "exec": {
                    "apiVersion": EXEC_API_VERSION,
                    "command": "aws",
                    "args": ["eks", "get-token", "--cluster-name", name, "--region", region],
                    "env": [
                        {"name": "AWS_ACCESS_KEY_ID",     "value": credentials.access_key_id},
                        {"name": "AWS_SECRET_ACCESS_KEY", "value": credentials.secret_access_key},
                        {"name": "AWS_SESSION_TOKEN",     "value": credentials.session_token},
                    ],
                    "interactiveMode": "Never",
                },
            },
        }],
    }


def render_kubeconfig(cluster: ClusterDescription, credentials: SessionCredentials, region: str) -> str:
    return yaml.safe_dump(build_kubeconfig(cluster, credentials, region), sort_keys=False)
