"""
Main orchestrator for VM LDAP Sync.

This module exposes every workflow step as a SyncOrchestrator method. Each
step takes the RequestContext the workflow engine hands it and returns a
StepResult; any SyncError raised inside a step becomes an ``error`` result
with a readable reason. Steps never write to the context themselves, the
engine (or the batch helpers below) applies ``outputs`` and ``state``.
"""

import sys
import logging
import functools
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import yaml

from vm_ldap_sync.batch import BatchRunner, BatchScheduler
from vm_ldap_sync.config import (
    ConfigLoader, DirectoryConfig, DEFAULT_CONFIGURATION_NAME, DEFAULT_REPLICATION_RETRY_SECONDS,
    encrypt_password,
)
from vm_ldap_sync.context import Outcome, RequestContext, StepResult
from vm_ldap_sync.directory import DirectoryConnection, DirectoryEntry
from vm_ldap_sync.email_validation import EmailValidator, MemoryValidationCache, TagValidationCache
from vm_ldap_sync.errors import AmbiguousEntry, ConfigurationMissing, MissingParameter, NotFound, SyncError
from vm_ldap_sync.lifecycle import EntryLifecycleManager
from vm_ldap_sync.locator import EntryLocator
from vm_ldap_sync.logging_setup import setup_logging
from vm_ldap_sync.platform import Dispatcher, Inventory, TaggingService, VirtualMachine
from vm_ldap_sync.policy import AttributePolicy, MappingPolicy
from vm_ldap_sync.retry import RetryState
from vm_ldap_sync.tags import (
    LDAP_SYNC_SUCCESSFUL_STATUS, TagAggregator, TagCatalog, TagProjection,
)

logger = logging.getLogger(__name__)

SET_LDAP_SYNC_STATUS_STEP = 'SetLDAPSyncStatus'
RETIREMENT_OBJECT_TYPE = 'vm_retire_task'
RETIREMENT_EVENT_TYPE = 'request_vm_retire'


def workflow_step(func: Callable[..., StepResult]) -> Callable[..., StepResult]:
    """Turn a SyncError raised by a step into an error result."""

    @functools.wraps(func)
    def wrapper(self, ctx: RequestContext, *args, **kwargs) -> StepResult:
        try:
            return func(self, ctx, *args, **kwargs)
        except SyncError as e:
            logger.error(f"{func.__name__} failed: {e}")
            return StepResult.error(str(e))

    return wrapper


def apply_result(ctx: RequestContext, result: StepResult) -> RequestContext:
    """Apply a step's outputs and state the way the workflow engine does."""
    ctx.object.update(result.outputs)
    ctx.state.update(result.state)
    return ctx


def coerce_entries(value: Any) -> List[DirectoryEntry]:
    """Accept entries as DirectoryEntry objects or their to_dict() form."""
    entries = []
    for item in value or []:
        if isinstance(item, DirectoryEntry):
            entries.append(item)
        elif isinstance(item, dict) and 'dn' in item:
            entries.append(DirectoryEntry(dn=item['dn'], attributes=item.get('attributes') or {}))
        else:
            raise MissingParameter('ldap_entries')
    return entries


class SyncOrchestrator:
    """
    Workflow steps for creating, updating, deleting and tagging VM entries.

    Collaborators are injected; the directory configuration is loaded from
    the YAML file on first use unless one is passed in.
    """

    def __init__(self, config_path: Optional[str] = None,
                 directory_name: str = DEFAULT_CONFIGURATION_NAME,
                 directory_config: Optional[DirectoryConfig] = None,
                 inventory: Optional[Inventory] = None,
                 tagging: Optional[TaggingService] = None,
                 dispatcher: Optional[Dispatcher] = None,
                 policy: Optional[AttributePolicy] = None,
                 connection_factory: Optional[Callable[[DirectoryConfig], DirectoryConnection]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            directory_name: Named directory configuration to use
            directory_config: Ready-made directory configuration, skips file loading
            inventory: VM inventory, needed by the batch steps
            tagging: Tagging service, enables persistent validation cache and tag creation
            dispatcher: Dispatcher for fanning out batches
            policy: Site policy, built from the directory's tag_mapping by default
            connection_factory: Builds a DirectoryConnection for a configuration
            clock: Time source for the last sync timestamp
        """
        self.config_path = config_path
        self.directory_name = directory_name
        self.config: Dict[str, Any] = {}
        self._directory_config = directory_config
        self.inventory = inventory
        self.tagging = tagging
        self.dispatcher = dispatcher
        self._policy = policy
        self._connection_factory = connection_factory
        self.clock = clock
        self._validator = None

    # Configuration and collaborators

    def _load_configuration(self):
        """Load the configuration file and the named directory."""
        loader = ConfigLoader(self.config_path)
        self.config = loader.load()
        self._directory_config = loader.directory(self.directory_name)

    @property
    def directory_config(self) -> DirectoryConfig:
        if self._directory_config is None:
            self._load_configuration()
        return self._directory_config

    @property
    def policy(self) -> AttributePolicy:
        if self._policy is None:
            if self.directory_config.get('tag_mapping'):
                self._policy = MappingPolicy.from_config(self.directory_config)
            else:
                self._policy = AttributePolicy()
        return self._policy

    @property
    def error_handling(self) -> Dict[str, Any]:
        return self.config.get('error_handling') or {}

    def connection_factory(self, config: DirectoryConfig) -> DirectoryConnection:
        if self._connection_factory is not None:
            return self._connection_factory(config)
        return DirectoryConnection(
            config,
            connect_retries=self.error_handling.get('connect_retries', 3),
            retry_wait=self.error_handling.get('retry_wait_seconds', 5),
        )

    def locator(self) -> EntryLocator:
        return EntryLocator(self.directory_config, self.connection_factory)

    def lifecycle(self) -> EntryLifecycleManager:
        return EntryLifecycleManager(
            self.directory_config,
            connection_factory=self.connection_factory,
            locator=self.locator(),
            replication_retry_seconds=self.error_handling.get(
                'replication_retry_seconds', DEFAULT_REPLICATION_RETRY_SECONDS),
        )

    def email_validator(self) -> EmailValidator:
        if self._validator is None:
            cache = TagValidationCache(self.tagging) if self.tagging else MemoryValidationCache()
            self._validator = EmailValidator(self.locator(), cache)
        return self._validator

    # Request helpers

    def _find_vm(self, ctx: RequestContext) -> Optional[VirtualMachine]:
        provision = ctx.root.get('miq_provision')
        if provision is not None and getattr(provision, 'vm', None) is not None:
            return provision.vm
        return ctx.get_param('vm')

    def _require_vm(self, ctx: RequestContext) -> VirtualMachine:
        vm = self._find_vm(ctx)
        if vm is None:
            raise MissingParameter('vm')
        return vm

    def _dialog_attributes(self, ctx: RequestContext) -> Dict[str, Any]:
        """Provisioning options when provisioning, otherwise the root scope."""
        provision = ctx.root.get('miq_provision')
        if provision is not None and getattr(provision, 'options', None):
            return dict(provision.options)
        return dict(ctx.root)

    def _is_retiring(self, ctx: RequestContext) -> bool:
        object_type = ctx.root.get('vmdb_object_type')
        return object_type == RETIREMENT_OBJECT_TYPE or (
            object_type == 'vm' and ctx.root.get('event_type') == RETIREMENT_EVENT_TYPE
        )

    def _entries(self, ctx: RequestContext) -> List[DirectoryEntry]:
        value = ctx.get_param('ldap_entries')
        if value is None:
            raise MissingParameter('ldap_entries')
        return coerce_entries(value)

    # Entry steps

    @workflow_step
    def get_entries(self, ctx: RequestContext, delete_flow: bool = False) -> StepResult:
        """
        Find the VM's entries.

        In the delete flow finding nothing is not an error: the step
        continues and flags ``ldap_no_entries_found`` for the verify step.
        """
        vm = self._find_vm(ctx)
        try:
            entries = self.locator().search(
                vm=vm,
                filter_value=ctx.get_param('ldap_filter_value'),
                treebase=ctx.get_param('ldap_treebase'),
                filter_attribute=ctx.get_param('ldap_filter_attribute'),
                scope=ctx.get_param('ldap_search_scope'),
            )
        except NotFound as e:
            if not delete_flow:
                raise
            logger.info(f"{e}, nothing to delete")
            return StepResult(outcome=Outcome.CONTINUE, outputs={'ldap_no_entries_found': True})

        return StepResult(outputs={'ldap_entries': entries})

    @workflow_step
    def verify_entries_found(self, ctx: RequestContext) -> StepResult:
        if ctx.get_param('ldap_no_entries_found'):
            vm = self._find_vm(ctx)
            reason = f"No LDAP entries found to delete for VM [{vm.name if vm else 'unknown'}]"
            logger.warning(reason)
            return StepResult(outcome=Outcome.SKIP, reason=reason)
        return StepResult()

    @workflow_step
    def new_entry_attributes(self, ctx: RequestContext) -> StepResult:
        vm = self._require_vm(ctx)
        dialog_attributes = self._dialog_attributes(ctx)
        config = self.directory_config
        hostname = vm.hostname

        attributes = self.policy.new_entry_attributes(hostname, vm, dialog_attributes, config)
        dn = self.policy.new_entry_dn(hostname, vm, dialog_attributes, config)
        logger.info(f"New LDAP entry for VM {vm.name}: dn={dn}")
        return StepResult(outputs={'ldap_new_entry_attributes': attributes, 'ldap_new_entry_dn': dn})

    @workflow_step
    def add_entry(self, ctx: RequestContext) -> StepResult:
        """
        Add the VM's entry, or keep waiting for it to replicate.

        On a retry the add is skipped and only the search is repeated.
        """
        vm = self._require_vm(ctx)
        retry_state = RetryState.from_state(ctx.state)

        dn = ctx.get_param('ldap_new_entry_dn')
        attributes = ctx.get_param('ldap_new_entry_attributes')
        if not retry_state.retrying:
            if dn is None:
                raise MissingParameter('ldap_new_entry_dn')
            if attributes is None:
                raise MissingParameter('ldap_new_entry_attributes')

        result = self.lifecycle().create(vm, dn=dn, attributes=attributes, retry_state=retry_state)
        if result.awaiting_replication:
            return StepResult.retry(
                result.retry_after,
                f"Waiting for new LDAP entry {result.retry_state.dn} to become visible",
                state=result.retry_state.to_state(),
            )
        return StepResult(outputs={'ldap_entries': result.entries}, state=result.retry_state.to_state())

    @workflow_step
    def munge_entry_attributes(self, ctx: RequestContext) -> StepResult:
        vm = self._require_vm(ctx)
        entries = self._entries(ctx)
        if len(entries) > 1:
            raise AmbiguousEntry(f"More then one existing LDAP entry for VM ({vm.name}) was found, "
                                 f"unsure how to handle this case.")

        desired = self.policy.desired_attributes(
            entries[0] if entries else None,
            self._dialog_attributes(ctx),
            retiring=self._is_retiring(ctx),
        )
        return StepResult(outputs={'ldap_entry_attributes': desired})

    @workflow_step
    def update_entry_attributes(self, ctx: RequestContext) -> StepResult:
        vm = self._require_vm(ctx)
        entries = self._entries(ctx)
        desired = ctx.get_param('ldap_entry_attributes', {})

        result = self.lifecycle().update(vm, entries, desired)
        return StepResult(outputs={'ldap_entry_operations': len(result.operations)})

    @workflow_step
    def delete_entries(self, ctx: RequestContext) -> StepResult:
        result = self.lifecycle().delete(self._entries(ctx))
        return StepResult(outputs={'ldap_deleted_entries': result.deleted})

    # Tag sync steps

    @workflow_step
    def get_vm_tags_and_attributes(self, ctx: RequestContext) -> StepResult:
        vm = self._require_vm(ctx)
        entries = self._entries(ctx)

        projection = TagAggregator(self.policy.classify, self.clock).aggregate(vm, entries)
        return StepResult(outputs={
            'vm_tags': projection.tags,
            'vm_custom_attributes': projection.custom_attributes,
            'ldap_sync_successful': True,
            'ldap_sync_status': LDAP_SYNC_SUCCESSFUL_STATUS,
        })

    @workflow_step
    def set_sync_status(self, ctx: RequestContext) -> StepResult:
        """Write the sync status on top of the aggregated tags and custom attributes."""
        projection = TagProjection(
            tags=dict(ctx.get_param('vm_tags') or {}),
            custom_attributes=dict(ctx.get_param('vm_custom_attributes') or {}),
        )
        projection = TagAggregator(self.policy.classify, self.clock).finalize(
            projection,
            successful=ctx.get_param('ldap_sync_successful'),
            status=ctx.get_param('ldap_sync_status'),
        )
        if self.tagging is not None:
            TagCatalog(self.tagging).ensure_assignment(projection.tags)
        return StepResult(outputs={
            'vm_tags': projection.tags,
            'vm_custom_attributes': projection.custom_attributes,
        })

    def on_error(self, ctx: RequestContext, message: Optional[str] = None) -> StepResult:
        """Record the failure and jump to status finalization."""
        message = message or ctx.get_param('message')
        logger.info(f"Skip to state: {SET_LDAP_SYNC_STATUS_STEP}")
        return StepResult(
            outcome=Outcome.CONTINUE,
            reason=message,
            outputs={'ldap_sync_status': message, 'ldap_sync_successful': False},
            next_state=SET_LDAP_SYNC_STATUS_STEP,
        )

    # Batch steps

    @workflow_step
    def execute_in_batches(self, ctx: RequestContext) -> StepResult:
        if self.dispatcher is None:
            raise ConfigurationMissing("No dispatcher configured for batch execution")
        scheduler = BatchScheduler(self.dispatcher, self.directory_config.vms_batch_size)
        batches = scheduler.dispatch_container(
            ctx.root.get('vmdb_object_type'),
            ctx.root,
            ctx.get_param('automation_request_instance_name'),
        )
        return StepResult(outputs={'dispatched_batches': len(batches)})

    def update_vm(self, vm: VirtualMachine, root: Optional[Dict[str, Any]] = None) -> StepResult:
        """Locate, munge and update one VM's entry."""
        ctx = RequestContext(root=dict(root or {}, vm=vm))
        for step in (self.get_entries, self.munge_entry_attributes, self.update_entry_attributes):
            result = step(ctx)
            if not result.successful:
                return result
            apply_result(ctx, result)
        return result

    def sync_vm_tags(self, vm: VirtualMachine) -> StepResult:
        """Locate one VM's entries and project them onto tags, recording failures as status."""
        ctx = RequestContext(root={'vm': vm})
        for step in (self.get_entries, self.get_vm_tags_and_attributes):
            result = step(ctx)
            if not result.successful:
                apply_result(ctx, self.on_error(ctx, result.reason))
                break
            apply_result(ctx, result)

        status = self.set_sync_status(ctx)
        if status.successful and ctx.get_param('ldap_sync_successful') is False:
            return StepResult.error(ctx.get_param('ldap_sync_status'))
        return status

    @workflow_step
    def update_batch(self, ctx: RequestContext) -> StepResult:
        if self.inventory is None:
            raise ConfigurationMissing("No inventory configured for batch processing")
        root = {key: value for key, value in ctx.root.items() if key != 'vm_ids'}
        results = BatchRunner(self.inventory).run(ctx.get_param('vm_ids'),
                                                 lambda vm: self.update_vm(vm, root))
        return StepResult(outputs={'update_results': results})

    @workflow_step
    def sync_tags_batch(self, ctx: RequestContext) -> StepResult:
        if self.inventory is None:
            raise ConfigurationMissing("No inventory configured for batch processing")
        results = BatchRunner(self.inventory).run(ctx.get_param('vm_ids'), self.sync_vm_tags)
        return StepResult(outputs={'update_results': results})

    # Email validation

    @workflow_step
    def validate_email_addresses(self, ctx: RequestContext) -> StepResult:
        email_addresses = ctx.get_param('email_addresses')
        if isinstance(email_addresses, str):
            email_addresses = [e.strip() for e in email_addresses.replace('\n', ',').split(',') if e.strip()]

        result = self.email_validator().validate(
            email_addresses,
            ctx.get_param('ldap_treebase'),
            ctx.get_param('ldap_filter_attribute'),
        )
        return StepResult(outputs={
            'valid_ldap_emails': result.valid,
            'invalid_ldap_emails': result.invalid,
        })

    # Operational entry points

    def search(self, filter_value: str, filter_attribute: Optional[str] = None,
               treebase: Optional[str] = None) -> List[DirectoryEntry]:
        return self.locator().search(filter_value=filter_value, filter_attribute=filter_attribute,
                                     treebase=treebase, require=False)

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration and directory bind.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            config = self.directory_config
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': f'Configuration {config.name} loaded successfully'
            }
        except SyncError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        try:
            with self.connection_factory(config):
                pass
            health_status['checks']['ldap'] = {
                'status': 'pass',
                'message': f'LDAP bind to {config.server} successful'
            }
        except SyncError as e:
            health_status['checks']['ldap'] = {
                'status': 'fail',
                'message': f'LDAP bind failed: {e}'
            }
            health_status['status'] = 'unhealthy'

        return health_status


def main():
    """Main entry point for the application."""
    import argparse
    import getpass
    import json

    parser = argparse.ArgumentParser(description='VM LDAP Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--directory', '-d', default=DEFAULT_CONFIGURATION_NAME,
                        help='Named directory configuration to use')
    parser.add_argument('--health-check', action='store_true',
                        help='Check configuration and directory bind')
    parser.add_argument('--search', metavar='VALUE',
                        help='Print the entries matching VALUE on the hostname filter attribute')
    parser.add_argument('--encrypt-password', action='store_true',
                        help='Encrypt a bind password for the configuration file')

    args = parser.parse_args()

    orchestrator = SyncOrchestrator(config_path=args.config, directory_name=args.directory)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    try:
        orchestrator._load_configuration()
    except ConfigurationMissing as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(orchestrator.config.get('logging', {}))

    if args.encrypt_password:
        secret_key = ConfigLoader(args.config).secret_key()
        if not secret_key:
            print("No secret key configured (security.key_file or VM_LDAP_SYNC_SECRET_KEY)", file=sys.stderr)
            sys.exit(1)
        print(encrypt_password(getpass.getpass('Bind password: '), secret_key))
        sys.exit(0)

    if args.search:
        try:
            entries = orchestrator.search(args.search)
        except SyncError as e:
            logger.error(f"Search failed: {e}")
            print(f"Search failed: {e}", file=sys.stderr)
            sys.exit(1)
        print(yaml.safe_dump([entry.to_dict() for entry in entries], default_flow_style=False, sort_keys=False))
        sys.exit(0)

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
