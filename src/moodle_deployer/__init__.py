"""Idempotent provisioning and cleanup of Moodle on Amazon EKS."""

__version__ = "0.1.0"
