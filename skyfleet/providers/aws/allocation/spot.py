"""Spot instance allocation.

Allocating a group of Spot instances takes several non-transactional EC2
calls. ``SpotGroupAllocator`` makes them behave like one operation: either at
least ``min_count`` tagged, addressable instances come back, or everything the
allocation created is cancelled and terminated.

The phases run in order::

    reconciling -> submitting -> tagging-requests -> polling
        -> tagging-instances -> awaiting-network -> succeeded

and any failure, cancellation or shortfall goes to ``rolling-back`` and then
``failed``.

A re-run for the same virtual instance ids after a crash picks up the
requests and instances the earlier run left behind, found by their tags.
A request or instance that resolved but was never tagged cannot be found
this way; rollback of the run that created it is what cleans it up.
"""

from __future__ import annotations

import base64
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from itertools import batched
from typing import Any

from loguru import logger

from skyfleet.constants import MAX_TAG_FILTER_VALUES, ErrorCode, SpotRequestState, SpotRequestStatus
from skyfleet.errors import (
    AllocationError,
    ConditionAccumulator,
    InsufficientCapacityError,
    classify,
    error_code,
    propagate,
    propagate_if_unrecoverable,
)
from skyfleet.retry import not_unrecoverable, on_not_found, retry_until
from skyfleet.types import AllocationPhase, AllocationRecord, InstanceTemplate, ProvisionedInstance

from ..helper import AllocationHelper, is_not_terminal
from ..tags import Tag, tags_to_dict
from .base import InstanceAllocator, determine_client_token

log = logger.bind(component="spot")

_CREATE_WARNINGS = {
    ErrorCode.MAX_SPOT_INSTANCE_COUNT_EXCEEDED: (
        "Some spot instances were not allocated due to reaching the max spot instance request limit."
    ),
    ErrorCode.INSUFFICIENT_INSTANCE_CAPACITY: (
        "Some instances were not allocated due to instance limits or capacity issues."
    ),
    ErrorCode.INSTANCE_LIMIT_EXCEEDED: (
        "Some instances were not allocated due to instance limits or capacity issues."
    ),
    ErrorCode.REQUEST_LIMIT_EXCEEDED: "Encountered rate limit errors while allocating instances.",
}

_CAPACITY_CODES = frozenset({
    ErrorCode.INSUFFICIENT_INSTANCE_CAPACITY,
    ErrorCode.INSTANCE_LIMIT_EXCEEDED,
    ErrorCode.MAX_SPOT_INSTANCE_COUNT_EXCEEDED,
})

type SpotRequest = dict[str, Any]


class SpotGroupAllocator(InstanceAllocator):
    """Allocates a group of Spot instances, one per virtual instance id.

    Example:
        >>> allocator = SpotGroupAllocator(helper, template, ["a", "b", "c"], min_count=2)
        >>> instances = allocator.allocate()
    """

    def __init__(
        self,
        helper: AllocationHelper,
        template: InstanceTemplate,
        virtual_instance_ids: Sequence[str],
        min_count: int,
    ) -> None:
        super().__init__(helper, template, virtual_instance_ids, min_count)

        start = self.clock.now()
        self.request_expiration = start + self.timeouts.spot_request_duration
        self.price_change_deadline = start + self.timeouts.spot_price_change_grace

        self.records: dict[str, AllocationRecord] = {
            vid: AllocationRecord(vid) for vid in self.virtual_instance_ids
        }
        # Request id -> instance id, for instances whose request never got a tag.
        self.untagged_instances: dict[str, str] = {}
        self.phase = AllocationPhase.RECONCILING

    def _enter(self, phase: AllocationPhase) -> None:
        log.debug("{template}: {old} -> {new}", template=self.template.name, old=self.phase, new=phase)
        self.phase = phase

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def allocate(self) -> list[ProvisionedInstance]:
        log.info(
            "Requesting {n} Spot instances for {template} (min {min})",
            n=len(self.records), template=self.template.name, min=self.min_count,
        )
        accumulator = ConditionAccumulator()

        try:
            self._enter(AllocationPhase.RECONCILING)
            self._check_for_orphaned_instances()
            self._check_for_orphaned_requests()

            self._enter(AllocationPhase.SUBMITTING)
            needing_request = [vid for vid, r in self.records.items() if r.pending_submission]
            if needing_request:
                new_requests = self._request_spot_instances(needing_request, accumulator)

                self._enter(AllocationPhase.TAGGING_REQUESTS)
                self._tag_spot_requests(new_requests)

            self._enter(AllocationPhase.POLLING)
            self._wait_for_spot_requests(self.outstanding_request_ids(), self.request_expiration)

            self._enter(AllocationPhase.TAGGING_INSTANCES)
            self._tag_spot_instances(self.clock.now() + self.timeouts.instance_start_timeout)

            self._enter(AllocationPhase.AWAITING_NETWORK)
            self._wait_for_network()
        except BaseException as e:
            self._rollback(success=False, accumulator=accumulator)
            if not isinstance(e, Exception):
                # Cancellation and interrupts propagate unchanged once cleaned up.
                raise
            log.opt(exception=e).error("Problem allocating Spot instances")
            raise AllocationError(
                "Problem allocating Spot instances",
                cause=classify(e),
                conditions=accumulator.conditions,
            ) from e

        allocated = self.allocated_ids()
        if len(allocated) < self.min_count:
            log.info(
                "Failed to acquire required number of Spot instances (desired {n}, required {min}, acquired {got})",
                n=len(self.records), min=self.min_count, got=len(allocated),
            )
            self._rollback(success=False, accumulator=accumulator)
            raise InsufficientCapacityError(
                f"Acquired {len(allocated)} of the {self.min_count} required Spot instances",
                conditions=accumulator.conditions,
            )

        self._rollback(success=True, accumulator=accumulator)
        for condition in accumulator.errors:
            log.error("Cleanup after successful allocation: {msg}", msg=condition.message)

        self._enter(AllocationPhase.SUCCEEDED)
        return self._wait_until_findable(allocated)

    def allocated_ids(self) -> list[str]:
        """Ids whose record has a tagged instance with a private IP."""
        return [vid for vid, r in self.records.items() if r.allocated]

    def outstanding_request_ids(self) -> set[str]:
        """Request ids that have not resolved to an instance."""
        return {r.request_id for r in self.records.values() if r.request_id and r.instance_id is None}

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def _check_for_orphaned_instances(self) -> None:
        log.info("Checking for orphaned Spot instances")
        found = self.helper.do_find(self.template, self.records, predicate=is_not_terminal)
        for vid, instance in found.items():
            template_name = self.tags.template_name(instance.get("Tags"))
            if template_name != self.template.name:
                log.warning(
                    "Instance {id} for {vid} belongs to template {other}, skipping",
                    id=instance["InstanceId"], vid=vid, other=template_name,
                )
                continue

            log.info("Found orphaned instance {id} / {vid}; will reuse", id=instance["InstanceId"], vid=vid)
            record = self.records[vid]
            record.set_instance_id(instance["InstanceId"])
            record.mark_tagged()
            if instance.get("PrivateIpAddress"):
                record.set_private_ip(instance["PrivateIpAddress"])

    def _describe_tagged_requests(self) -> Iterator[SpotRequest]:
        for chunk in batched(self.records, MAX_TAG_FILTER_VALUES):
            request: dict[str, Any] = {"Filters": [self.tags.tag_filter(chunk)]}
            while True:
                response = self.ec2.describe_spot_instance_requests(**request)
                yield from response.get("SpotInstanceRequests", [])
                if not response.get("NextToken"):
                    break
                request = {**request, "NextToken": response["NextToken"]}

    def _check_for_orphaned_requests(self) -> None:
        log.info("Checking for orphaned Spot instance requests")
        for request in self._describe_tagged_requests():
            request_id = request["SpotInstanceRequestId"]
            tags = tags_to_dict(request.get("Tags"))
            vid = tags.get(self.tags.id_tag_name)

            if vid is None or vid not in self.records:
                log.warning("Orphaned Spot instance request {id} has no usable virtual instance id", id=request_id)
                continue
            if tags.get(self.tags.template_tag_name) != self.template.name:
                log.warning(
                    "Spot instance request {id} for {vid} belongs to another template, skipping",
                    id=request_id, vid=vid,
                )
                continue

            record = self.records[vid]
            match request.get("State"):
                case SpotRequestState.ACTIVE:
                    log.info(
                        "Reusing fulfilled orphaned Spot instance request {id} / {vid} / {iid}",
                        id=request_id, vid=vid, iid=request.get("InstanceId"),
                    )
                    record.set_request_id(request_id)
                    if request.get("InstanceId"):
                        record.set_instance_id(request["InstanceId"])
                case SpotRequestState.CANCELLED | SpotRequestState.CLOSED | SpotRequestState.FAILED:
                    pass
                case _:
                    if _valid_until(request) > self.clock.now():
                        log.info("Reusing pending orphaned Spot instance request {id} / {vid}", id=request_id, vid=vid)
                        record.set_request_id(request_id)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def _launch_specification(self) -> dict[str, Any]:
        spec = self.helper.launch_specification(self.template)
        # request_spot_instances does not encode user data for us.
        if "UserData" in spec:
            spec["UserData"] = base64.b64encode(spec["UserData"].encode()).decode("ascii")
        return spec

    def _request_spot_instances(
        self,
        virtual_instance_ids: list[str],
        accumulator: ConditionAccumulator,
    ) -> dict[str, str]:
        """Submit one Spot request covering ``virtual_instance_ids``.

        Returned requests are paired with the ids by position; the tags
        written next are what make the pairing authoritative.
        """
        log.info("Requesting {n} Spot instances", n=len(virtual_instance_ids))

        request: dict[str, Any] = {
            "LaunchSpecification": self._launch_specification(),
            "InstanceCount": len(virtual_instance_ids),
            "ClientToken": determine_client_token(virtual_instance_ids, int(self.request_expiration * 1000)),
            "ValidUntil": datetime.fromtimestamp(self.request_expiration, tz=UTC),
            "Type": "one-time",
        }
        if self.template.spot_price is not None:
            request["SpotPrice"] = str(self.template.spot_price)
        if self.template.block_duration_minutes is not None:
            request["BlockDurationMinutes"] = self.template.block_duration_minutes

        def submit() -> list[SpotRequest]:
            try:
                return self.ec2.request_spot_instances(**request).get("SpotInstanceRequests", [])
            except Exception as e:
                code = error_code(e)
                if code in _CREATE_WARNINGS:
                    accumulator.add_warning(_CREATE_WARNINGS[code], code)
                    log.warning(_CREATE_WARNINGS[code])
                raise

        try:
            # Same client token on every attempt, so a retry never duplicates requests.
            created = retry_until(
                submit,
                clock=self.clock,
                deadline=self.request_expiration,
                interval=self.timeouts.spot_poll_interval,
                on=not_unrecoverable,
            )
        except Exception as e:
            if self.min_count == 0 and error_code(e) in _CAPACITY_CODES:
                log.warning("Hit capacity limits with no minimum required; proceeding with no instances")
                return {}
            raise propagate(e) from e

        pairs = dict(zip(virtual_instance_ids, (r["SpotInstanceRequestId"] for r in created)))
        for vid, request_id in pairs.items():
            log.info("Created Spot instance request {id} for {vid}", id=request_id, vid=vid)
            self.records[vid].set_request_id(request_id)

        lost = len(virtual_instance_ids) - len(pairs)
        if lost > 0:
            log.warning("Lost {n} Spot instance requests", n=lost)
        return pairs

    # -------------------------------------------------------------------------
    # Request tagging
    # -------------------------------------------------------------------------

    def _tag_spot_requests(self, requests: dict[str, str]) -> None:
        if not requests:
            return

        self._wait_for_requests_visible(list(requests.values()))
        user_tags = self.tags.user_defined_tags(self.template)
        for vid, request_id in requests.items():
            self.tag_spot_request(vid, request_id, user_tags)

    def _wait_for_requests_visible(self, request_ids: list[str]) -> None:
        try:
            retry_until(
                lambda: self.ec2.describe_spot_instance_requests(SpotInstanceRequestIds=request_ids),
                clock=self.clock,
                deadline=self.request_expiration,
                interval=self.timeouts.tag_retry_interval,
                on=on_not_found,
            )
        except Exception as e:
            if not on_not_found(e):
                raise propagate(e) from e
            log.warning("Timeout waiting for Spot instance requests {ids} to be visible", ids=request_ids)

    def tag_spot_request(self, virtual_instance_id: str, request_id: str, user_tags: list[Tag]) -> bool:
        """Write the id and template tags on a Spot request.

        Returns False if the request was still not found at the expiration.
        """
        log.info("Tagging Spot instance request {id} / {vid}", id=request_id, vid=virtual_instance_id)
        tags = self.tags.request_tags(self.template, virtual_instance_id, user_tags)
        try:
            retry_until(
                lambda: self.ec2.create_tags(Resources=[request_id], Tags=tags),
                clock=self.clock,
                deadline=self.request_expiration,
                interval=self.timeouts.tag_retry_interval,
                on=on_not_found,
            )
        except Exception as e:
            if on_not_found(e):
                log.warning("Timeout waiting for Spot instance request {id} to be tagged", id=request_id)
                return False
            raise propagate(e) from e
        return True

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    def _wait_for_spot_requests(
        self,
        pending: set[str],
        deadline: float,
        *,
        cancelling: bool = False,
    ) -> None:
        """Poll ``pending`` until every request resolves or ``deadline`` passes.

        When ``cancelling``, active requests are simply waited on: they are
        expected to turn into cancelled ones, possibly with a running
        instance that must then be accounted for.
        """
        pending = set(pending)
        while pending:
            try:
                response = self.ec2.describe_spot_instance_requests(SpotInstanceRequestIds=sorted(pending))
            except Exception as e:
                propagate_if_unrecoverable(e)
                log.debug("Transient failure describing Spot requests: {err}", err=e)
                response = {}

            for request in response.get("SpotInstanceRequests", []):
                self._resolve(request, pending, cancelling)

            if not pending or self.clock.now() >= deadline:
                break
            self.clock.sleep(self.timeouts.spot_poll_interval, cancellable=not cancelling)

        if pending:
            log.info("Spot instance requests {ids} did not resolve in time", ids=sorted(pending))

    def _resolve(self, request: SpotRequest, pending: set[str], cancelling: bool) -> None:
        request_id = request["SpotInstanceRequestId"]
        state = request.get("State")
        status = SpotRequestStatus.parse(request.get("Status", {}).get("Code"))
        vid = self.tags.virtual_instance_id(request.get("Tags"))
        record = self.records.get(vid) if vid is not None else None

        if vid is not None and record is None:
            log.warning("Spot instance request {id} is tagged for unknown id {vid}", id=request_id, vid=vid)
            vid = None

        match state:
            case SpotRequestState.ACTIVE:
                if cancelling:
                    log.info("Waiting, request {id} is still {state}", id=request_id, state=state)
                elif record is None:
                    # Tagging is asynchronous; the tag may not be visible yet.
                    log.info("Waiting, request {id} not yet tagged", id=request_id)
                else:
                    pending.discard(request_id)
                    record.set_instance_id(request["InstanceId"])
                    log.info("Request {id} fulfilled by {iid}", id=request_id, iid=request["InstanceId"])

            case SpotRequestState.CANCELLED:
                pending.discard(request_id)
                if status is SpotRequestStatus.REQUEST_CANCELED_AND_INSTANCE_RUNNING:
                    instance_id = request.get("InstanceId")
                    if record is None:
                        log.info("Untagged request {id} has instance {iid}", id=request_id, iid=instance_id)
                        if instance_id:
                            self.untagged_instances[request_id] = instance_id
                    elif instance_id:
                        record.set_instance_id(instance_id)

            case SpotRequestState.CLOSED | SpotRequestState.FAILED:
                pending.discard(request_id)
                log.info("Request {id} ended as {state} ({status})", id=request_id, state=state, status=status)

            case _:
                if status is SpotRequestStatus.PRICE_TOO_LOW and self.clock.now() >= self.price_change_deadline:
                    log.info("Spot price too low for request {id}", id=request_id)
                    pending.discard(request_id)
                elif status.terminal:
                    pending.discard(request_id)
                    log.info("Request {id} cannot be fulfilled ({status})", id=request_id, status=status)
                else:
                    log.info("Waiting, request {id} is {state} ({status})", id=request_id, state=state, status=status)

    # -------------------------------------------------------------------------
    # Instance tagging and network
    # -------------------------------------------------------------------------

    def _tag_spot_instances(self, deadline: float) -> None:
        user_tags = self.tags.user_defined_tags(self.template)
        for vid, record in self.records.items():
            if record.instance_id is not None and not record.tagged:
                if self.tag_instance(vid, record.instance_id, deadline, user_tags):
                    record.mark_tagged()
                else:
                    log.info("Instance {iid} could not be tagged", iid=record.instance_id)

    def _wait_for_network(self) -> None:
        waiting = {
            vid: r.instance_id
            for vid, r in self.records.items()
            if r.instance_id is not None and r.tagged and r.private_ip is None
        }
        if not waiting:
            return
        for vid, instance in self.wait_for_private_ips(waiting).items():
            self.records[vid].set_private_ip(instance["PrivateIpAddress"])

    def _wait_until_findable(self, allocated: list[str]) -> list[ProvisionedInstance]:
        """Wait for tag searches to see every allocated instance.

        This narrows, but cannot close, the window in which a caller's
        ``find`` misses an instance that was just allocated.
        """
        if not allocated:
            return []

        deadline = self.clock.now() + self.timeouts.instance_findable_timeout
        found = self.helper.do_find(self.template, allocated)
        while len(found) < len(allocated) and self.clock.now() < deadline:
            log.info(
                "Found {found} Spot instances while expecting {n}, waiting for all to be findable",
                found=len(found), n=len(allocated),
            )
            # Not cancellable: the allocation has already succeeded.
            self.clock.sleep(self.timeouts.spot_poll_interval, cancellable=False)
            found = self.helper.do_find(self.template, allocated)

        if len(found) == len(allocated):
            log.info("Found all {n} allocated Spot instances", n=len(allocated))
        else:
            log.warning(
                "Found only {found} of {n} Spot instances before the findable timeout, continuing anyway",
                found=len(found), n=len(allocated),
            )

        result = []
        for vid in allocated:
            record = self.records[vid]
            instance = found.get(vid)
            if instance is not None and instance["InstanceId"] == record.instance_id:
                result.append(self.helper.to_provisioned(self.template, vid, instance))
            else:
                result.append(ProvisionedInstance(
                    virtual_instance_id=vid,
                    instance_id=record.instance_id,
                    private_ip=record.private_ip,
                    instance_type=self.template.instance_type,
                    spot=True,
                ))
        return result

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------

    def _rollback(self, *, success: bool, accumulator: ConditionAccumulator) -> None:
        """Cancel outstanding requests, then terminate instances we should not keep.

        After a failure every instance recorded in the session goes; after a
        success only the untagged ones do. Instances of untagged requests
        always go. Failures are added to ``accumulator``, never raised.
        """
        if not success:
            self._enter(AllocationPhase.ROLLING_BACK)

        try:
            self._cancel_spot_requests(accumulator)
        finally:
            self._terminate_instances(success, accumulator)

        if not success:
            self._enter(AllocationPhase.FAILED)

    def _cancel_spot_requests(self, accumulator: ConditionAccumulator) -> None:
        request_ids = sorted(self.outstanding_request_ids())
        if not request_ids:
            return

        log.info("Canceling Spot instance requests {ids}", ids=request_ids)
        deadline = self.clock.now() + self.timeouts.cancel_settle_timeout
        try:
            retry_until(
                lambda: self.ec2.cancel_spot_instance_requests(SpotInstanceRequestIds=request_ids),
                clock=self.clock,
                deadline=deadline,
                interval=self.timeouts.tag_retry_interval,
                on=not_unrecoverable,
                cancellable=False,
            )
        except Exception as e:
            log.warning("Problem canceling Spot instance requests {ids}: {err}", ids=request_ids, err=e)
            accumulator.add_exception("Problem canceling Spot instance requests", e)
            return

        # A request can be fulfilled while it is being cancelled; catch those instances.
        try:
            self._wait_for_spot_requests(set(request_ids), deadline, cancelling=True)
        except Exception as e:
            accumulator.add_exception("Problem waiting for Spot instance requests to cancel", e)

    def _terminate_instances(self, success: bool, accumulator: ConditionAccumulator) -> None:
        if success:
            log.info("Allocation successful, cleaning up untagged instances")
            instance_ids = {r.instance_id for r in self.records.values() if r.instance_id and not r.tagged}
        else:
            log.info("Allocation unsuccessful, cleaning up all instances")
            instance_ids = {r.instance_id for r in self.records.values() if r.instance_id}

        instance_ids |= set(self.untagged_instances.values())
        if not instance_ids:
            return

        try:
            self.helper.do_delete(instance_ids)
        except Exception as e:
            log.warning("Problem terminating Spot instances {ids}: {err}", ids=sorted(instance_ids), err=e)
            accumulator.add_exception("Problem terminating Spot instances", e)


def _valid_until(request: SpotRequest) -> float:
    valid_until = request.get("ValidUntil")
    if valid_until is None:
        return float("inf")
    if hasattr(valid_until, "timestamp"):
        return valid_until.timestamp()
    return float(valid_until)

