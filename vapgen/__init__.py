"""Controller that generates ValidatingAdmissionPolicies from Kyverno ClusterPolicies."""

__version__ = "0.1.0"
