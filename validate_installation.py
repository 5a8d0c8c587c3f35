#!/usr/bin/env python3
"""
Validation script for VM LDAP Sync.

This script validates that all dependencies are installed correctly
and that the core functionality works without a directory server.
"""

import sys
import importlib


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("cryptography", "cryptography"),
        ("pytest", "pytest"),
        ("pytest-mock", "pytest_mock"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "vm_ldap_sync.config",
        "vm_ldap_sync.context",
        "vm_ldap_sync.directory",
        "vm_ldap_sync.locator",
        "vm_ldap_sync.diff",
        "vm_ldap_sync.lifecycle",
        "vm_ldap_sync.retry",
        "vm_ldap_sync.tags",
        "vm_ldap_sync.batch",
        "vm_ldap_sync.email_validation",
        "vm_ldap_sync.policy",
        "vm_ldap_sync.main",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality."""
    print("\n=== Functionality Validation ===")

    try:
        from vm_ldap_sync.config import encrypt_password, generate_secret_key, DirectoryConfig
        key = generate_secret_key()
        config = DirectoryConfig('default', {
            'server': 'ldap.example.com',
            'username': 'cn=admin',
            'password': encrypt_password('secret', key),
            'treebase': 'dc=example,dc=com',
        }, secret_key=key)
        assert config.password == 'secret'
        print("  ✓ Password encryption")

        from vm_ldap_sync.diff import compute_operations
        operations = compute_operations({'mail': ['a@x']}, {'mail': ['a@x', 'b@x']})
        assert len(operations) == 1
        print("  ✓ Attribute diff")

        from vm_ldap_sync.batch import partition
        assert [len(chunk) for chunk in partition(list(range(25)), 10)] == [10, 10, 5]
        print("  ✓ Batch partitioning")

        from vm_ldap_sync.retry import retry_call
        retry_call(lambda: "test", max_attempts=1, delay=0, exceptions=())
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        import subprocess

        result = subprocess.run([sys.executable, "-m", "vm_ldap_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("VM LDAP Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.yaml.example to config.yaml and describe your directory")
        print("  2. Encrypt the bind password: python -m vm_ldap_sync.main --encrypt-password")
        print("  3. Test with: python -m vm_ldap_sync.main --health-check")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
