from django.contrib.admin.apps import AdminConfig


class GeneratorAdminConfig(AdminConfig):
    default_site = "config.admin.GeneratorAdminSite"
