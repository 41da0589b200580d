from django.apps import AppConfig


class PaywayConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "payway"
    verbose_name = "ABA PayWay"
