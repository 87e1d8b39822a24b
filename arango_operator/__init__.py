"""ArangoDB deployment operator: reconciles ArangoDeployment resources on Kubernetes."""

__version__ = "0.1.0"
