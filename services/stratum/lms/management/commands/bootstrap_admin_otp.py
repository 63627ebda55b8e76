"""Provision a confirmed TOTP device from the shell.

Superusers need one to reach /admin/ while DJANGO_ADMIN_2FA_REQUIRED is on.
With --instructor the same command enrolls a staff account for the
instructor API when STRATUM_INSTRUCTOR_2FA_REQUIRED is on; the device name
then defaults to STRATUM_INSTRUCTOR_2FA_DEVICE_NAME so the API finds it.
"""

import base64
import secrets
import string

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction
from django_otp.plugins.otp_static.models import StaticDevice, StaticToken
from django_otp.plugins.otp_totp.models import TOTPDevice

BACKUP_TOKEN_DIGITS = 10


class Command(BaseCommand):
    help = "Provision or rotate a TOTP device for a superuser (admin) or instructor (API)."

    def add_arguments(self, parser):
        parser.add_argument("--username", required=True, help="Superuser or instructor username")
        parser.add_argument(
            "--device-name",
            default="",
            help="TOTP device label (default: admin-primary, or the instructor device name with --instructor)",
        )
        parser.add_argument("--instructor", action="store_true", help="Enroll a non-superuser staff account")
        parser.add_argument("--rotate", action="store_true", help="Replace an existing device with the same name")
        parser.add_argument(
            "--with-static-backup",
            action="store_true",
            help="Also print a one-time static backup token",
        )

    def _device_name(self, opts) -> str:
        explicit = (opts["device_name"] or "").strip()
        if explicit:
            return explicit
        if opts["instructor"]:
            return (getattr(settings, "INSTRUCTOR_2FA_DEVICE_NAME", "") or "").strip() or "instructor-primary"
        return "admin-primary"

    def _load_user(self, username: str, *, allow_instructor: bool):
        user = get_user_model().objects.filter(username=username).first()
        if user is None:
            raise CommandError(f"User not found: {username}")
        if not user.is_active:
            raise CommandError(f"User {username} is inactive")
        if user.is_superuser or (allow_instructor and user.is_staff):
            return user
        raise CommandError(f"User {username} is not a superuser (pass --instructor for staff accounts)")

    @transaction.atomic
    def handle(self, *args, **opts):
        username = (opts["username"] or "").strip()
        user = self._load_user(username, allow_instructor=bool(opts["instructor"]))
        device_name = self._device_name(opts)

        existing = TOTPDevice.objects.filter(user=user, name=device_name)
        if existing.exists():
            if not opts["rotate"]:
                raise CommandError(f"TOTP device '{device_name}' already exists for {username}. Use --rotate to replace it.")
            existing.delete()
        device = TOTPDevice.objects.create(user=user, name=device_name, confirmed=True)

        self.stdout.write(self.style.SUCCESS(f"Created TOTP device '{device_name}' for {username}."))
        self.stdout.write("Scan this URI in your authenticator app:")
        self.stdout.write(device.config_url)
        self.stdout.write(f"Manual secret (base32): {base64.b32encode(device.bin_key).decode('ascii').rstrip('=')}")

        if opts["with_static_backup"]:
            backup, _created = StaticDevice.objects.get_or_create(user=user, name=f"{device_name}-backup")
            token = "".join(secrets.choice(string.digits) for _ in range(BACKUP_TOKEN_DIGITS))
            StaticToken.objects.create(device=backup, token=token)
            self.stdout.write(self.style.WARNING(f"One-time static backup token (shown once): {token}"))
