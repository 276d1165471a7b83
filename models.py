from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
from enums import UserRole, TaskStatus, TaskPriority, ProjectStatus

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value):
    """資料庫一律存 naive UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def iso(value):
    return value.isoformat() if value else None


# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    # OAuth / 邀請建立的帳號也會有一個隨機的 placeholder hash
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=UserRole.MEMBER.value)

    department = db.Column(db.String(100))
    skills = db.Column(db.JSON, default=list)
    avatar_url = db.Column(db.String(500))
    avatar_storage_id = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    # 邀請流程
    invite_token = db.Column(db.String(64), unique=True, index=True)
    invite_token_expires_at = db.Column(db.DateTime)

    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    created_projects = db.relationship('Project', foreign_keys='Project.creator_id',
                                       backref='creator', lazy=True)
    managed_projects = db.relationship('Project', foreign_keys='Project.manager_id',
                                       backref='manager', lazy=True)
    created_tasks = db.relationship('Task', foreign_keys='Task.creator_id',
                                    backref='creator', lazy=True)
    assignments = db.relationship('TaskAssignment', backref='user', lazy=True)
    comments = db.relationship('Comment', backref='user', lazy=True)
    time_logs = db.relationship('TimeLog', backref='user', lazy=True)
    uploaded_files = db.relationship('Attachment', backref='uploaded_by', lazy=True)
    activity_logs = db.relationship('ActivityLog', backref='user', lazy=True)

    @property
    def is_privileged(self):
        return self.role in (UserRole.ADMIN.value, UserRole.MANAGER.value)

# ============================================
# 2. Project 模型
# ============================================
class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    client = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(20), nullable=False, default=ProjectStatus.PLANNED.value)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)
    budget = db.Column(db.Float)
    thumbnail = db.Column(db.String(500))

    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    manager_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # 關聯
    sprints = db.relationship('Sprint', backref='project', lazy=True,
                              cascade='all,delete-orphan', order_by='Sprint.sprint_number')

    # 索引
    __table_args__ = (
        db.Index('idx_project_status', 'status'),
        db.Index('idx_project_creator', 'creator_id'),
        db.Index('idx_project_manager', 'manager_id'),
    )

# ============================================
# 3. Sprint 模型
# ============================================
class Sprint(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    sprint_number = db.Column(db.Integer, nullable=False)
    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)

    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    tasks = db.relationship('Task', backref='sprint', lazy=True, cascade='all,delete-orphan')
    creator = db.relationship('User', foreign_keys=[creator_id])

    # 唯一性約束
    __table_args__ = (
        db.UniqueConstraint('project_id', 'sprint_number', name='unique_project_sprint_number'),
    )

# ============================================
# 4. Task 模型
# ============================================
class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=TaskStatus.TODO.value)
    priority = db.Column(db.String(20), nullable=False, default=TaskPriority.MEDIUM.value)
    estimate = db.Column(db.Float)

    sprint_id = db.Column(db.Integer, db.ForeignKey('sprint.id'), nullable=False)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    parent_task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=True)

    # optimistic concurrency, 每次 UPDATE 自動 +1
    version = db.Column(db.Integer, nullable=False, default=1)

    # 時間欄位
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    due_date = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    # 關聯
    assignments = db.relationship('TaskAssignment', backref='task', lazy=True,
                                  cascade='all,delete-orphan')
    subtasks = db.relationship('Task', backref=db.backref('parent_task', remote_side=[id]))
    comments = db.relationship('Comment', backref='task', lazy=True, cascade='all,delete-orphan')
    time_logs = db.relationship('TimeLog', backref='task', lazy=True, cascade='all,delete-orphan')
    attachments = db.relationship('Attachment', backref='task', lazy=True,
                                  cascade='all,delete-orphan')
    activities = db.relationship('ActivityLog', backref='task', lazy=True,
                                 cascade='all,delete-orphan', order_by='ActivityLog.id')

    __mapper_args__ = {'version_id_col': version}

    # 索引
    __table_args__ = (
        db.Index('idx_task_sprint_status', 'sprint_id', 'status'),
        db.Index('idx_task_creator', 'creator_id'),
        db.Index('idx_task_due_date', 'due_date'),
    )

    @property
    def assignee_ids(self):
        return {assignment.user_id for assignment in self.assignments}

# ============================================
# 5. TaskAssignment 模型 (User <-> Task)
# ============================================
class TaskAssignment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    assigned_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('task_id', 'user_id', name='unique_task_assignment'),
        db.Index('idx_assignment_user', 'user_id'),
    )

# ============================================
# 6. Comment 模型
# ============================================
class Comment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    content = db.Column(db.Text, nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    parent_id = db.Column(db.Integer, db.ForeignKey('comment.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, onupdate=utcnow)

    # 自我關聯（用於回覆）
    replies = db.relationship('Comment', backref=db.backref('parent', remote_side=[id]),
                              cascade='all,delete-orphan')

# ============================================
# 7. TimeLog 模型
# ============================================
class TimeLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    hours = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text)
    date = db.Column(db.DateTime, nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_timelog_user', 'user_id'),
        db.Index('idx_timelog_task', 'task_id'),
    )

# ============================================
# 8. Attachment 模型
# ============================================
class Attachment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    filename = db.Column(db.String(255), nullable=False)
    file_url = db.Column(db.String(500), nullable=False)
    storage_id = db.Column(db.String(255))
    file_type = db.Column(db.String(100))
    file_size = db.Column(db.Integer)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    uploaded_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    uploaded_at = db.Column(db.DateTime, default=utcnow)

# ============================================
# 9. ActivityLog 模型 (append-only)
# ============================================
class ActivityLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    # 內容依 type 而定, 見 activity.py
    details = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.Index('idx_activity_task', 'task_id'),
        db.Index('idx_activity_user', 'user_id'),
    )

    @property
    def entry(self):
        from activity import entry_from_log
        return entry_from_log(self)
