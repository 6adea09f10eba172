"""Infrastructure provisioning and workload deployment for the Ghibli Food stack."""

__version__ = "0.1.0"
