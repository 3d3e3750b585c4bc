from django.db import migrations
from admin.models import AuthGroupName

MODERATOR_MODELS = ["moderationrule", "flaggedcontent", "userban", "chatmessage", "chatsession"]
WIDGET_MANAGER_MODELS = ["widgetconfig", "contextrule", "prompttemplate", "responseformat"]


def model_permissions(Permission, app_label, models):
    return Permission.objects.filter(
        codename__regex=rf'^(add|change|delete|view)_({"|".join(models)})$',
        content_type__app_label=app_label,
    ).exclude(codename__contains="historical")


def create_groups(apps, schema_editor):
    Group = apps.get_model("auth", "Group")
    Permission = apps.get_model("auth", "Permission")

    moderator, _ = Group.objects.get_or_create(name=AuthGroupName.Moderator.value)
    moderator.permissions.add(*model_permissions(Permission, "chat", MODERATOR_MODELS))

    widget_manager, _ = Group.objects.get_or_create(name=AuthGroupName.WidgetManager.value)
    widget_manager.permissions.add(*model_permissions(Permission, "chat", WIDGET_MANAGER_MODELS))
    widget_manager.permissions.add(*model_permissions(Permission, "knowledge", ["knowledgebase", "knowledgebasedocument"]))

    Group.objects.get_or_create(name=AuthGroupName.UnlockRestrictedContent.value)


def remove_groups(apps, schema_editor):
    Group = apps.get_model("auth", "Group")
    Group.objects.filter(name__in=[group.value for group in AuthGroupName]).delete()


class Migration(migrations.Migration):
    dependencies = [
        ("auth", "0012_alter_user_first_name_max_length"),
        ("chat", "0002_contextrule_knowledge_bases"),
    ]

    operations = [
        migrations.RunPython(create_groups, remove_groups),
    ]
