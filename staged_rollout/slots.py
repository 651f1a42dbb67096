import threading
from dataclasses import replace
from datetime import datetime

from .errors import SlotBusy, SwapPrecondition
from .logger import get_logger
from .models import (
    AuditRecord, Health, Slot, SlotName, StagingHandle, SwapResult, utcnow
)

CELLS = ("blue", "green")


class SlotManager:
    """Staging and production slots for one environment.

    Both builds live in two physical cells; a single routing pointer names the
    cell serving production. Promotion flips the pointer, so traffic never sees
    a half-updated slot.
    """

    def __init__(self, environment, production_version=None):
        self.environment = environment
        self.logger = get_logger("slots")
        self._lock = threading.Lock()
        self._cells = {
            "blue": Slot(SlotName.PRODUCTION, production_version,
                         health=Health.HEALTHY if production_version else Health.UNKNOWN,
                         updated_at=utcnow()),
            "green": Slot(SlotName.STAGING, updated_at=utcnow()),
        }
        self._live = "blue"
        self._audit = []

    @property
    def live_cell(self):
        return self._live

    @property
    def _standby(self):
        return "green" if self._live == "blue" else "blue"

    @property
    def production(self):
        with self._lock:
            return replace(self._cells[self._live], name=SlotName.PRODUCTION)

    @property
    def staging(self):
        with self._lock:
            return replace(self._cells[self._standby], name=SlotName.STAGING)

    @property
    def audit_log(self):
        with self._lock:
            return tuple(self._audit)

    def stage(self, artifact_ref, deployment_id=None, actor="controller"):
        """Bind an artifact to the staging slot"""
        with self._lock:
            standby = self._standby
            cell = self._cells[standby]
            if cell.deployment_id is not None:
                raise SlotBusy(
                    f"staging slot in {self.environment} is held by deployment {cell.deployment_id}"
                )
            now = utcnow()
            self._cells[standby] = Slot(SlotName.STAGING, artifact_ref, deployment_id,
                                        Health.UNKNOWN, now)

        self.logger.info(f"[{self.environment}] {actor} staged {artifact_ref} in {standby}")
        return StagingHandle(self.environment, artifact_ref, deployment_id, now)

    def mark_health(self, health):
        """Record the latest health verdict for the staged build"""
        with self._lock:
            cell = self._cells[self._standby]
            if cell.empty:
                return
            self._cells[self._standby] = replace(cell, health=Health(health), updated_at=utcnow())

    def swap(self, actor="controller", deployment_id=None):
        """Make the staged build live by flipping the routing pointer"""
        with self._lock:
            live = self._cells[self._live]
            if deployment_id is not None and live.deployment_id == deployment_id:
                # Already promoted; nothing left to do
                return SwapResult(swapped=False, previous_version=None, new_version=live.version)

            standby = self._standby
            staged = self._cells[standby]
            if staged.empty:
                raise SwapPrecondition(f"staging slot in {self.environment} is empty")
            if staged.retired:
                # Staging only holds the build this swap replaced
                return SwapResult(swapped=False, previous_version=None, new_version=live.version)
            if staged.health == Health.FAILED:
                raise SwapPrecondition(
                    f"staged build {staged.version} in {self.environment} is marked unhealthy"
                )

            now = utcnow()
            record = AuditRecord(now, self.environment, "swap", live.version, staged.version,
                                 actor, staged.deployment_id)
            # The old production build stays behind as an instant-revert candidate
            self._cells[self._live] = replace(live, name=SlotName.STAGING, deployment_id=None,
                                              retired=True, updated_at=now)
            self._cells[standby] = replace(staged, name=SlotName.PRODUCTION, updated_at=now)
            self._live = standby
            self._audit.append(record)

        self.logger.info(f"[{self.environment}] {actor} swapped {record.previous_version} -> "
                         f"{record.new_version} (live cell now {standby})")
        return SwapResult(True, record.previous_version, record.new_version, record)

    def discard(self, actor="controller"):
        """Clear the staging slot; production is never touched"""
        with self._lock:
            standby = self._standby
            staged = self._cells[standby]
            if staged.empty:
                return
            record = AuditRecord(utcnow(), self.environment, "discard", staged.version, None,
                                 actor, staged.deployment_id)
            self._cells[standby] = Slot(SlotName.STAGING, updated_at=record.timestamp)
            self._audit.append(record)

        self.logger.info(f"[{self.environment}] {actor} discarded {record.previous_version} from staging")

    def to_dict(self):
        with self._lock:
            return {
                "environment": self.environment,
                "live": self._live,
                "cells": {name: _slot_to_dict(slot) for name, slot in self._cells.items()},
                "audit": [_record_to_dict(r) for r in self._audit],
            }

    @classmethod
    def from_dict(cls, data):
        manager = cls(data["environment"])
        live = data.get("live", "blue")
        if live not in CELLS:
            raise ValueError(f"unknown live cell: {live}")
        manager._live = live
        for name in CELLS:
            cell = data.get("cells", {}).get(name)
            if cell:
                manager._cells[name] = Slot(
                    name=SlotName.PRODUCTION if name == live else SlotName.STAGING,
                    version=cell.get("version"),
                    deployment_id=cell.get("deployment_id"),
                    health=Health(cell.get("health", "unknown")),
                    retired=cell.get("retired", False),
                    updated_at=_parse_ts(cell.get("updated_at")),
                )
        manager._audit = [
            AuditRecord(
                timestamp=_parse_ts(r["timestamp"]),
                environment=r["environment"],
                action=r["action"],
                previous_version=r.get("previous_version"),
                new_version=r.get("new_version"),
                actor=r["actor"],
                deployment_id=r.get("deployment_id"),
            )
            for r in data.get("audit", [])
        ]
        return manager


def _parse_ts(value):
    return datetime.fromisoformat(value) if value else None


def _slot_to_dict(slot):
    return {
        "version": slot.version,
        "deployment_id": slot.deployment_id,
        "health": slot.health.value,
        "retired": slot.retired,
        "updated_at": slot.updated_at.isoformat() if slot.updated_at else None,
    }


def _record_to_dict(record):
    return {
        "timestamp": record.timestamp.isoformat(),
        "environment": record.environment,
        "action": record.action,
        "previous_version": record.previous_version,
        "new_version": record.new_version,
        "actor": record.actor,
        "deployment_id": record.deployment_id,
    }
