from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from vps_control.core.config import AppConfig
from vps_control.core.exceptions import NotFoundError
from vps_control.core.utils import Deadline, utc_now
from vps_control.persistence.db import Database
from vps_control.persistence.models import BotStatus, HostRow, HostStatus
from vps_control.providers.base import PENDING_IP, ProviderAdapter
from vps_control.providers.cloud_init import render_cloud_init
from vps_control.providers.regions import Placement, select_placement
from vps_control.providers.registry import ProviderRegistry

INSTANCE_ACTIONS = ("validate", "start", "halt", "destroy")

_INSTANCE_HOST_STATUS = {
    "start": HostStatus.PROVISIONING.value,
    "halt": HostStatus.OFFLINE.value,
    "destroy": HostStatus.STOPPED.value,
}


class Provisioner:
    """Creates (or adopts) a bot host and registers it in the store.

    Provider failures propagate as ``ProviderError``; callers decide how to
    surface them.
    """

    def __init__(
        self,
        db: Database,
        registry: ProviderRegistry,
        cfg: AppConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.registry = registry
        self.cfg = cfg
        self.clock = clock
        self._log = logging.getLogger("vps_control.provisioner")

    def provision(
        self,
        provider: str,
        *,
        target_exchange: str | None = None,
        credentials: dict[str, Any] | None = None,
        ip_address: str | None = None,
        deadline: Deadline | None = None,
    ) -> dict[str, Any]:
        adapter = self.registry.build(provider, credentials)
        placement = select_placement(
            target_exchange, adapter.name, default_exchange=self.cfg.provisioning.default_exchange
        )
        if ip_address:
            return self._adopt(adapter, placement, ip_address)

        creds = credentials or {}
        label = f"hft-bot-{placement.exchange}-{int(self.clock().timestamp())}"
        self._log.info(
            "provisioning instance",
            extra={"provider": adapter.name, "region": placement.region, "plan": placement.plan},
        )
        created = adapter.create(
            region=placement.region,
            plan=placement.plan,
            image=None,
            ssh_key=creds.get("sshKeyId"),
            cloud_init=render_cloud_init(),
            label=label,
        )
        ip = created.ip or adapter.poll_until_ip(created.instance_id, deadline)
        outbound_ip = None if ip == PENDING_IP else ip

        host_id, deployment_id = self._register(
            adapter.name,
            placement,
            instance_id=created.instance_id,
            outbound_ip=outbound_ip,
            label=label,
            ssh_key_ref=creds.get("sshKeyPath"),
        )
        self.db.timeline_repo().insert(
            provider=adapter.name,
            event_type="deployment",
            event_subtype="instance_created",
            title=f"{adapter.name} VPS Deployed",
            description=(
                f"Instance {created.instance_id} deployed in {placement.region} "
                f"for {placement.exchange} trading"
            ),
            metadata={
                "instanceId": created.instance_id,
                "region": placement.region,
                "targetExchange": placement.exchange,
            },
        )
        self._log.info(
            "instance provisioned",
            extra={"provider": adapter.name, "instance_id": created.instance_id, "ip": ip},
        )
        return {
            "success": True,
            "provider": adapter.name,
            "instanceId": created.instance_id,
            "publicIp": ip,
            "region": placement.region,
            "plan": placement.plan,
            "hostId": host_id,
            "deploymentId": deployment_id,
        }

    def instance_action(
        self,
        provider: str,
        action: str,
        *,
        instance_id: str | None = None,
        credentials: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """validate, start, halt or destroy an instance on the provider.

        A destroyed instance takes its host to ``stopped`` and retires its
        deployment, primary flag included.
        """
        if action not in INSTANCE_ACTIONS:
            return {"success": False, "error": f"Unknown action: {action}"}
        adapter = self.registry.build(provider, credentials)
        if action == "validate":
            res = adapter.validate()
            self._log.info("credentials validated", extra={"provider": adapter.name, "valid": res.ok})
            return {
                "success": res.ok,
                "provider": adapter.name,
                "valid": res.ok,
                "accountBalance": res.account_balance,
                "error": res.error,
            }
        if not instance_id:
            return {"success": False, "provider": adapter.name, "error": "instanceId is required"}

        ok = getattr(adapter, action)(instance_id)
        host = self.db.host_repo().find_by_instance(adapter.name, instance_id)
        if ok and host is not None:
            self._apply_instance_state(adapter.name, action, host)
        self._log.info(
            "instance action", extra={"provider": adapter.name, "instance_id": instance_id, "action": action}
        )
        return {
            "success": ok,
            "provider": adapter.name,
            "action": action,
            "instanceId": instance_id,
            "hostId": host.id if host else None,
        }

    def _apply_instance_state(self, provider: str, action: str, host: HostRow) -> None:
        status = _INSTANCE_HOST_STATUS[action]
        with self.db.transaction():
            self.db.host_repo().set_status(host.id, status)
            if action == "destroy":
                deployments = self.db.deployment_repo()
                was_primary = any(d.is_primary for d in deployments.list_for_host(host.id))
                deployments.retire_for_host(host.id)
                self.db.host_repo().set_bot_status(host.id, BotStatus.STOPPED.value)
                if was_primary:
                    self.db.trading_config_repo().update_checked(
                        bot_status=BotStatus.STOPPED.value, trading_enabled=False
                    )
            self.db.cloud_config_repo().upsert(provider, status=status)
            self.db.timeline_repo().insert(
                provider=provider,
                event_type="deployment",
                event_subtype=f"instance_{action}",
                title=f"{provider} VPS {action}",
                description=f"Instance {host.instance_id} at {host.outbound_ip or 'no ip'}: {action}",
                metadata={"instanceId": host.instance_id, "hostId": host.id, "ip": host.outbound_ip},
            )

    def _adopt(self, adapter: ProviderAdapter, placement: Placement, ip: str) -> dict[str, Any]:
        found = adapter.lookup_by_ip(ip)
        if not found.found:
            raise NotFoundError(adapter.name, f"No instance found with IP {ip}")
        region = found.region or placement.region
        plan = found.plan or placement.plan
        adopted = Placement(adapter.name, placement.exchange, region, plan, placement.latency_ms)
        host_id, deployment_id = self._register(
            adapter.name, adopted, instance_id=found.instance_id, outbound_ip=ip, label=None, ssh_key_ref=None
        )
        self.db.timeline_repo().insert(
            provider=adapter.name,
            event_type="deployment",
            event_subtype="instance_adopted",
            title=f"{adapter.name} VPS Registered",
            description=f"Existing instance {found.instance_id} at {ip} registered",
            metadata={"instanceId": found.instance_id, "ip": ip, "status": found.status},
        )
        self._log.info("instance adopted", extra={"provider": adapter.name, "ip": ip})
        return {
            "success": True,
            "provider": adapter.name,
            "instanceId": found.instance_id,
            "publicIp": ip,
            "region": region,
            "plan": plan,
            "hostId": host_id,
            "deploymentId": deployment_id,
            "adopted": True,
        }

    def _register(
        self,
        provider: str,
        placement: Placement,
        *,
        instance_id: str | None,
        outbound_ip: str | None,
        label: str | None,
        ssh_key_ref: str | None,
    ) -> tuple[str, str]:
        hosts = self.db.host_repo()
        deployments = self.db.deployment_repo()
        with self.db.transaction():
            existing = hosts.find_live(provider, outbound_ip) if outbound_ip else None
            if existing is not None:
                host_id = existing.id
                if instance_id and existing.instance_id != instance_id:
                    hosts.set_network(host_id, instance_id=instance_id, outbound_ip=outbound_ip)
            else:
                host_id = hosts.insert(
                    provider=provider,
                    outbound_ip=outbound_ip,
                    region=placement.region,
                    instance_type=placement.plan,
                    instance_id=instance_id,
                    label=label,
                    ssh_key_ref=ssh_key_ref or self.cfg.ssh.key_path,
                    status=HostStatus.PROVISIONING.value,
                )

            current = deployments.list_for_host(host_id)
            if current:
                deployment_id = current[0].id
            else:
                is_primary = deployments.get_primary() is None
                deployment_id = deployments.insert(host_id=host_id, is_primary=is_primary)

            self.db.cloud_config_repo().upsert(
                provider,
                region=placement.region,
                instance_type=placement.plan,
                status=HostStatus.PROVISIONING.value,
                outbound_ip=outbound_ip,
            )
        return host_id, deployment_id
