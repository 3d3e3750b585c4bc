from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("chat", "0001_initial"),
        ("knowledge", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="contextrule",
            name="knowledge_bases",
            field=models.ManyToManyField(blank=True, related_name="context_rules", to="knowledge.knowledgebase"),
        ),
    ]
