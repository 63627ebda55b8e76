from django.contrib.admin.apps import AdminConfig


class StratumAdminConfig(AdminConfig):
    default_site = "config.admin.StratumAdminSite"
