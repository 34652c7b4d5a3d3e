"""Shared constants for ClusterUp."""

DIR_MODE = 0o755
FILE_MODE = 0o644
SCRIPT_MODE = 0o755
SECRET_MODE = 0o600

DEFAULT_CONFIG_FILE = ".clusterup.yml"
REGISTRY_PASSWORD_ENV = "CLUSTERUP_REGISTRY_PASSWORD"

DEFAULT_NODE_IMAGE_ID = (
    "ocid1.image.oc1.phx.aaaaaaaaybzd22v7pp73xyo77o4tnx4rtvwyclbne3g5eqmf7k6jq7gsjzxa"
)
DEFAULT_SHAPE = "VM.Standard.E2.1.Micro"
DEFAULT_CNI_MANIFEST_URL = (
    "https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml"
)
DEFAULT_INGRESS_NGINX_MANIFEST_URL = (
    "https://raw.githubusercontent.com/kubernetes/ingress-nginx/main/deploy/static/provider/cloud/deploy.yaml"
)
DEFAULT_ACME_SERVER = "https://acme-v02.api.letsencrypt.org/directory"
CERT_MANAGER_MANIFEST_URL = (
    "https://github.com/cert-manager/cert-manager/releases/download/{version}/cert-manager.yaml"
)
TERRAFORM_RELEASE_URL = (
    "https://releases.hashicorp.com/terraform/{version}/terraform_{version}_{os}_{arch}.zip"
)

CERT_MANAGER_NAMESPACE = "cert-manager"
CERT_MANAGER_DEPLOYMENTS = ("cert-manager", "cert-manager-cainjector", "cert-manager-webhook")
INGRESS_NGINX_NAMESPACE = "ingress-nginx"
INGRESS_NGINX_DEPLOYMENT = "ingress-nginx-controller"
INGRESS_CLASS = "nginx"
ISSUER_NAME = "letsencrypt-prod"
CERTIFICATE_NAME = "tls-cert"
TLS_SECRET_NAME = "tls-secret"

KUBE_API_PORT = 6443
REQUIRED_TOOLS = ("terraform", "ssh", "docker", "kubectl")

# Template values that must be replaced before a run.
PLACEHOLDER_VALUES = frozenset(
    {
        "your-domain.com",
        "your-email@example.com",
        "your-compartment-id",
        "your-availability-domain",
        "your-oracle-project-id",
        "subnet-ocid",
        "changeme",
        "example.com",
    }
)
PLACEHOLDER_PREFIXES = ("your-", "<", "changeme")
