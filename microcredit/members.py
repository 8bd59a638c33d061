"""
Member Registry Module

Branches, borrower groups and members. Groups carry the performance rating
that gates loan applications; members carry the loan cycle counter that is
bumped on every disbursement.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import BusinessRuleViolation, NotFoundError, ValidationError, returns_result
from .logging_config import get_logger, log_action
from .money import Numeric, to_decimal
from .sequences import CodeGenerator
from .storage import StorageRecord

if TYPE_CHECKING:
    from .repository import Repository


class MemberStatus(Enum):
    """Member standing"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    BLACKLISTED = "blacklisted"


class GroupStatus(Enum):
    """Group lifecycle"""
    FORMING = "forming"    # Enrolling members
    ACTIVE = "active"      # Has reached its minimum size
    INACTIVE = "inactive"


@dataclass
class Branch(StorageRecord):
    """Operating branch, its code appears in loan, group and member codes"""
    code: str
    name: str
    is_active: bool = True


@dataclass
class Group(StorageRecord):
    """Borrower group (joint liability circle)"""
    code: str
    branch_id: str
    name: str
    status: GroupStatus = GroupStatus.FORMING
    performance_rating: Decimal = Decimal('0')
    min_members: int = 5
    activation_date: Optional[date] = None


@dataclass
class Member(StorageRecord):
    """Borrower / saver"""
    code: str
    branch_id: str
    full_name: str
    phone: str
    join_date: date
    group_id: Optional[str] = None
    status: MemberStatus = MemberStatus.ACTIVE
    loan_cycle: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == MemberStatus.ACTIVE


class MemberRegistry:
    """
    Enrollment operations. Mutating operations return a Result and run in a
    single unit of work together with their code allocation and audit event.
    """

    def __init__(self, repository: 'Repository', codes: CodeGenerator, audit_trail: AuditTrail):
        self.repository = repository
        self.codes = codes
        self.audit_trail = audit_trail
        self.logger = get_logger("microcredit.members")

    @returns_result
    def create_branch(self, code: str, name: str, created_by: Optional[str] = None) -> Branch:
        """
        Register a branch

        Args:
            code: Short alphanumeric branch code, e.g. "DHK"
            name: Display name
            created_by: Staff ID

        Returns:
            Result with the created Branch
        """
        code = (code or "").strip().upper()
        if not code.isalnum():
            raise ValidationError("Branch code must be alphanumeric")
        if not name:
            raise ValidationError("Branch name is required")

        with self.repository.unit_of_work() as uow:
            if self.repository.get_branch_by_code(code):
                raise BusinessRuleViolation(f"Branch code {code} already exists")

            branch = Branch(id=str(uuid.uuid4()), created_at=uow.now, updated_at=uow.now,
                            code=code, name=name)
            uow.add(branch)

            self.audit_trail.log_event(
                event_type=AuditEventType.BRANCH_CREATED,
                entity_type="branch",
                entity_id=branch.id,
                metadata={"code": code, "name": name},
                user_id=created_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Branch {code} created",
                   user_id=created_by, action="create_branch", resource=f"branch:{branch.id}")
        return branch

    @returns_result
    def create_group(
        self,
        branch_id: str,
        name: str,
        min_members: int = 5,
        created_by: Optional[str] = None
    ) -> Group:
        """Create a group in Forming status with a GRP code"""
        if not name:
            raise ValidationError("Group name is required")
        if min_members < 1:
            raise ValidationError("Minimum members must be at least 1")

        with self.repository.unit_of_work() as uow:
            branch = self._active_branch(branch_id)

            group = Group(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                code=self.codes.group_code(branch.code, uow.now),
                branch_id=branch.id,
                name=name,
                min_members=min_members
            )
            uow.add(group)

            self.audit_trail.log_event(
                event_type=AuditEventType.GROUP_CREATED,
                entity_type="group",
                entity_id=group.id,
                metadata={"code": group.code, "branch_id": branch.id},
                user_id=created_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Group {group.code} created",
                   user_id=created_by, action="create_group", resource=f"group:{group.id}")
        return group

    @returns_result
    def activate_group(self, group_id: str, activated_by: Optional[str] = None) -> Group:
        """Move a Forming group to Active once it has enough members"""
        with self.repository.unit_of_work() as uow:
            group = self._group(group_id)
            if group.status != GroupStatus.FORMING:
                raise BusinessRuleViolation(f"Group {group.code} is {group.status.value}, expected forming")

            member_count = len(self.repository.members_in_group(group.id))
            if member_count < group.min_members:
                raise BusinessRuleViolation(
                    f"Group must have at least {group.min_members} members to activate"
                )

            group.status = GroupStatus.ACTIVE
            group.activation_date = uow.now.date()
            uow.register(group)

            self.audit_trail.log_event(
                event_type=AuditEventType.GROUP_STATUS_CHANGED,
                entity_type="group",
                entity_id=group.id,
                metadata={"status": group.status, "member_count": member_count},
                user_id=activated_by,
                now=uow.now
            )

        return group

    @returns_result
    def set_group_rating(self, group_id: str, rating: Numeric, changed_by: Optional[str] = None) -> Group:
        """Set the group's performance rating (0 to 1)"""
        rating = to_decimal(rating)
        if rating < 0 or rating > 1:
            raise ValidationError("Performance rating must be between 0 and 1")

        with self.repository.unit_of_work() as uow:
            group = self._group(group_id)
            old_rating = group.performance_rating
            group.performance_rating = rating
            uow.register(group)

            self.audit_trail.log_event(
                event_type=AuditEventType.GROUP_RATING_CHANGED,
                entity_type="group",
                entity_id=group.id,
                metadata={"old_rating": old_rating, "new_rating": rating},
                user_id=changed_by,
                now=uow.now
            )

        return group

    @returns_result
    def enroll_member(
        self,
        branch_id: str,
        full_name: str,
        phone: str,
        group_id: Optional[str] = None,
        join_date: Optional[date] = None,
        enrolled_by: Optional[str] = None
    ) -> Member:
        """
        Enroll a member in a branch, optionally into one of its groups

        Args:
            branch_id: Branch ID, must exist and be active
            full_name: Member name
            phone: Contact phone
            group_id: Optional group ID, must belong to the same branch
            join_date: Defaults to today
            enrolled_by: Staff ID

        Returns:
            Result with the enrolled Member
        """
        if not full_name or not full_name.strip():
            raise ValidationError("Member name is required")
        if not phone:
            raise ValidationError("Phone is required")

        with self.repository.unit_of_work() as uow:
            branch = self._active_branch(branch_id)

            if group_id is not None:
                group = self._group(group_id)
                if group.branch_id != branch.id:
                    raise BusinessRuleViolation(f"Group {group.code} does not belong to branch {branch.code}")
                if group.status == GroupStatus.INACTIVE:
                    raise BusinessRuleViolation(f"Group {group.code} is inactive")

            member = Member(
                id=str(uuid.uuid4()),
                created_at=uow.now,
                updated_at=uow.now,
                code=self.codes.member_code(branch.code, uow.now),
                branch_id=branch.id,
                full_name=full_name.strip(),
                phone=phone,
                join_date=join_date or uow.now.date(),
                group_id=group_id
            )
            uow.add(member)

            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_ENROLLED,
                entity_type="member",
                entity_id=member.id,
                metadata={"code": member.code, "branch_id": branch.id, "group_id": group_id},
                user_id=enrolled_by,
                now=uow.now
            )

        log_action(self.logger, "info", f"Member {member.code} enrolled",
                   user_id=enrolled_by, action="enroll_member", resource=f"member:{member.id}")
        return member

    @returns_result
    def set_member_status(self, member_id: str, status: MemberStatus,
                          changed_by: Optional[str] = None) -> Member:
        """Change a member's standing (e.g. blacklist a defaulter)"""
        if not isinstance(status, MemberStatus):
            raise ValidationError(f"Unknown member status: {status!r}")

        with self.repository.unit_of_work() as uow:
            member = self.repository.get_member(member_id)
            if not member:
                raise NotFoundError("member", member_id)

            old_status = member.status
            member.status = status
            uow.register(member)

            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_STATUS_CHANGED,
                entity_type="member",
                entity_id=member.id,
                metadata={"old_status": old_status, "new_status": status},
                user_id=changed_by,
                now=uow.now
            )

        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        return self.repository.get_member(member_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        return self.repository.get_group(group_id)

    def get_group_members(self, group_id: str) -> List[Member]:
        return self.repository.members_in_group(group_id)

    def _active_branch(self, branch_id: str) -> Branch:
        branch = self.repository.get_branch(branch_id)
        if not branch:
            raise NotFoundError("branch", branch_id)
        if not branch.is_active:
            raise BusinessRuleViolation(f"Branch {branch.code} is inactive")
        return branch

    def _group(self, group_id: str) -> Group:
        group = self.repository.get_group(group_id)
        if not group:
            raise NotFoundError("group", group_id)
        return group
