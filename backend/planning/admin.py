from django.contrib import admin

from .models import (
    Project,
    ProjectMember,
    ProjectMemberSkill,
    Skill,
    Task,
    TaskDependency,
    TaskRequiredSkill,
    UserSkill
)


class ProjectMemberInline(admin.TabularInline):
    model = ProjectMember
    extra = 0


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ('name', 'planning_status', 'deadline', 'created_at')
    list_filter = ('planning_status',)
    search_fields = ('name',)
    inlines = [ProjectMemberInline]


class TaskRequiredSkillInline(admin.TabularInline):
    model = TaskRequiredSkill
    extra = 0


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'project', 'status', 'difficulty_points', 'assignee_user_id', 'due_at')
    list_filter = ('status', 'difficulty_points')
    search_fields = ('title', 'assignee_user_id')
    inlines = [TaskRequiredSkillInline]


admin.site.register(Skill)
admin.site.register(UserSkill)
admin.site.register(ProjectMemberSkill)
admin.site.register(TaskDependency)
