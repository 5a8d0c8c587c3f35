"""
VM LDAP Sync - Keep per-VM LDAP directory entries in step with a virtualization platform.

This package creates, updates and deletes the directory entries that belong to
virtual machines, and projects directory attributes back onto the VMs as tags
and custom attributes.
"""

__version__ = "1.0.0"
__author__ = "VM LDAP Sync Team"
