"""
權限判斷 (Authorization Evaluator)

所有角色 / 擁有權 / 任務狀態的規則都集中在這裡。
這個模組是純函數: 不碰 Flask request, 不查資料庫,
呼叫端把需要的 id 算好傳進來就好。

    decision = evaluate(user.role, user.id, Action.UPDATE_TASK,
                        owner_ids={task.creator_id}, assignee_ids=task.assignee_ids)
    decision.enforce()   # 不允許就 raise 對應的 ApiError
"""
from dataclasses import dataclass
import enum
from enums import UserRole, TaskStatus
from errors import Forbidden, ForbiddenAssignment, InvalidStatusTransition


class Action(str, enum.Enum):
    # 專案 / Sprint
    READ_PROJECT = 'read_project'
    CREATE_PROJECT = 'create_project'
    UPDATE_PROJECT = 'update_project'
    DELETE_PROJECT = 'delete_project'
    MANAGE_SPRINT = 'manage_sprint'

    # 任務
    READ_TASK = 'read_task'
    CREATE_TASK = 'create_task'
    UPDATE_TASK = 'update_task'
    DELETE_TASK = 'delete_task'
    SUBMIT_TASK = 'submit_task'

    # 評論 / 工時 / 附件
    COMMENT = 'comment'
    UPDATE_COMMENT = 'update_comment'
    DELETE_COMMENT = 'delete_comment'
    LOG_TIME = 'log_time'
    UPDATE_TIME_LOG = 'update_time_log'
    DELETE_TIME_LOG = 'delete_time_log'
    VIEW_USER_TIME = 'view_user_time'
    ADD_ATTACHMENT = 'add_attachment'
    DELETE_ATTACHMENT = 'delete_attachment'

    # 使用者管理
    LIST_USERS = 'list_users'
    CREATE_USER = 'create_user'
    INVITE_USER = 'invite_user'
    UPDATE_USER = 'update_user'
    CHANGE_ROLE = 'change_role'
    SET_ACTIVE = 'set_active'
    DELETE_USER = 'delete_user'
    VIEW_USER_STATS = 'view_user_stats'

    # 報表
    VIEW_DASHBOARD = 'view_dashboard'


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = None
    error: type = Forbidden
    # Admin/Manager 跳過 Review 直接 Done
    forced: bool = False

    def __bool__(self):
        return self.allowed

    def enforce(self):
        if not self.allowed:
            raise self.error(self.reason)
        return self


ALLOW = Decision(True)


def deny(reason, error=Forbidden):
    return Decision(False, reason, error)


def _role(value):
    return UserRole(value)


def _status(value):
    return TaskStatus(value)


PRIVILEGED = frozenset({UserRole.ADMIN, UserRole.MANAGER})

# 只有 Admin/Manager 能做的動作
_PRIVILEGED_ONLY = {
    Action.CREATE_PROJECT: 'Only Admins and Managers can create projects',
    Action.UPDATE_PROJECT: 'Only Admins and Managers can update projects',
    Action.DELETE_PROJECT: 'Only Admins and Managers can delete projects',
    Action.MANAGE_SPRINT: 'Only Admins and Managers can manage sprints',
    Action.CREATE_TASK: 'Only Admins and Managers can create tasks',
    Action.DELETE_TASK: 'Only Admins and Managers can delete tasks',
    Action.LIST_USERS: 'Only Admins and Managers can list users',
    Action.CREATE_USER: 'Only Admins and Managers can create users',
    Action.INVITE_USER: 'Only Admins and Managers can invite users',
    Action.VIEW_DASHBOARD: 'Only Admins and Managers can view the dashboard',
}

# Member 是 owner 或 assignee 就可以
_OWNER_OR_ASSIGNEE = {
    Action.READ_PROJECT: 'Access denied',
    Action.READ_TASK: 'Access denied',
    Action.UPDATE_TASK: 'You can only update tasks you created or are assigned to',
    Action.COMMENT: 'You can only comment on tasks you can access',
    Action.ADD_ATTACHMENT: 'You can only attach files to tasks you can access',
}

# Member 必須是 owner
_OWNER_ONLY = {
    Action.UPDATE_TIME_LOG: 'You can only update your own time logs',
    Action.DELETE_TIME_LOG: 'You can only delete your own time logs',
    Action.DELETE_ATTACHMENT: 'You can only delete attachments you uploaded',
    Action.VIEW_USER_TIME: 'You can only view your own time logs',
    Action.UPDATE_USER: 'You can only update your own profile',
    Action.VIEW_USER_STATS: 'You can only view your own statistics',
}


def evaluate(actor_role, actor_id, action, owner_ids=(), assignee_ids=()):
    """
    判斷 (角色, 動作, 資源) 是否允許

    Args:
        actor_role: 操作者角色 ('Admin' / 'Manager' / 'Member')
        actor_id: 操作者 user id
        action: Action
        owner_ids: 資源的擁有者 (建立者, 專案 manager, 上傳者, 或使用者資源本身的 id)
        assignee_ids: 資源的負責人 (任務 assignee, 專案底下任務的 assignee)

    Returns:
        Decision
    """
    role = _role(actor_role)
    action = Action(action)
    owners = set(owner_ids or ())
    assignees = set(assignee_ids or ())
    is_owner = actor_id in owners
    is_assignee = actor_id in assignees

    # 自我保護: 連 Admin 都不能改自己的角色或停用/刪除自己
    if action == Action.CHANGE_ROLE:
        if is_owner:
            return deny('You cannot change your own role')
        if role != UserRole.ADMIN:
            return deny('Only Admins can change user roles')
        return ALLOW

    if action == Action.SET_ACTIVE:
        if is_owner:
            return deny('You cannot change the activation status of your own account')
        if role not in PRIVILEGED:
            return deny('Only Admins and Managers can activate or deactivate users')
        return ALLOW

    if action == Action.DELETE_USER:
        if is_owner:
            return deny('Cannot delete your own account')
        if role not in PRIVILEGED:
            return deny('Only Admins and Managers can delete users')
        return ALLOW

    if role == UserRole.ADMIN:
        return ALLOW

    # 評論只有作者或 Admin 能改/刪
    if action in (Action.UPDATE_COMMENT, Action.DELETE_COMMENT):
        if is_owner:
            return ALLOW
        verb = 'update' if action == Action.UPDATE_COMMENT else 'delete'
        return deny(f'You can only {verb} your own comments')

    if action in _PRIVILEGED_ONLY:
        if role in PRIVILEGED:
            return ALLOW
        return deny(_PRIVILEGED_ONLY[action])

    if role == UserRole.MANAGER:
        return ALLOW

    # 以下是 Member
    if action in _OWNER_OR_ASSIGNEE:
        if is_owner or is_assignee:
            return ALLOW
        return deny(_OWNER_OR_ASSIGNEE[action])

    if action in (Action.SUBMIT_TASK, Action.LOG_TIME):
        if is_assignee:
            return ALLOW
        if action == Action.LOG_TIME:
            return deny('You can only log time for assigned tasks')
        return deny('Only assignees can submit a task for review')

    if action in _OWNER_ONLY:
        if is_owner:
            return ALLOW
        return deny(_OWNER_ONLY[action])

    return deny('Insufficient permissions')


def can_grant_role(actor_role, target_role):
    """建立 / 邀請使用者時, 能不能給這個角色"""
    role = _role(actor_role)
    target = _role(target_role)

    if role == UserRole.ADMIN:
        return ALLOW
    if role == UserRole.MANAGER:
        if target == UserRole.ADMIN:
            return deny('Only Admins can invite or create Admin users')
        return ALLOW
    return deny('Only Admins and Managers can invite users')


# ============================================
# 任務狀態機
# ============================================

def check_transition(actor_role, current_status, new_status):
    """
    任務狀態轉換規則

    - ToDo / InProgress / Review 之間可以自由移動
    - 只有 Admin/Manager 能把任務標成 Done;
      不是從 Review 過來的算 forced
    - Done 之後只有 Admin/Manager 能重新打開
    """
    role = _role(actor_role)
    current = _status(current_status)
    new = _status(new_status)
    privileged = role in PRIVILEGED

    if current == new:
        return ALLOW

    if new == TaskStatus.DONE:
        if privileged:
            return Decision(True, forced=current != TaskStatus.REVIEW)
        if current == TaskStatus.REVIEW:
            return deny(
                'Only Managers or Admins can approve tasks in Review status to mark them as Done'
            )
        return deny(
            'Task must be in Review status before it can be marked as Done. '
            'Please move it to Review first.',
            InvalidStatusTransition,
        )

    if current == TaskStatus.DONE and not privileged:
        return deny('Only Managers or Admins can reopen a completed task')

    return ALLOW


def check_submission(current_status):
    """送審: 只有 ToDo / InProgress 能送到 Review"""
    current = _status(current_status)
    if current in (TaskStatus.TODO, TaskStatus.IN_PROGRESS):
        return ALLOW
    if current == TaskStatus.REVIEW:
        return deny('Task is already in Review', InvalidStatusTransition)
    return deny('Completed tasks cannot be submitted for review', InvalidStatusTransition)


# ============================================
# 指派規則
# ============================================

def check_assignment(actor_role, assignee_roles):
    """
    檢查整批 assignee

    assignee_roles 是所有被指派者的角色;
    Manager 的名單裡只要有一個 Admin 就整批拒絕
    """
    role = _role(actor_role)

    if role == UserRole.ADMIN:
        return ALLOW
    if role == UserRole.MANAGER:
        if any(_role(r) == UserRole.ADMIN for r in assignee_roles):
            return deny('Managers cannot assign tasks to Administrators', ForbiddenAssignment)
        return ALLOW
    return deny('Only Managers or Admins can change task assignees')
