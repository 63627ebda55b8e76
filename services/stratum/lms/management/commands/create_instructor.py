"""Create or update an instructor (staff, non-superuser) account."""

from __future__ import annotations

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandError
from django.core.validators import validate_email


class Command(BaseCommand):
    help = "Create an instructor account, or update one with --update."

    def add_arguments(self, parser):
        parser.add_argument("--username", required=True, help="Login name (usually the email)")
        parser.add_argument("--email", default="", help="Defaults to --username when it is an email")
        parser.add_argument("--password", default="", help="Starting password (required on create)")
        parser.add_argument("--first-name", default="")
        parser.add_argument("--last-name", default="")
        parser.add_argument("--update", action="store_true", help="Modify an existing account")
        parser.add_argument("--inactive", action="store_true", help="Disable sign-in for the account")

    def handle(self, *args, **opts):
        username = (opts["username"] or "").strip()
        email = (opts["email"] or "").strip().lower() or (username.lower() if "@" in username else "")
        password = opts["password"] or ""
        if not username:
            raise CommandError("--username is required.")
        if email:
            try:
                validate_email(email)
            except ValidationError as exc:
                raise CommandError(f"Invalid email: {email}") from exc

        User = get_user_model()
        user = User.objects.filter(username=username).first()
        if user is not None and not opts["update"]:
            raise CommandError(f"User {username} already exists. Use --update to modify it.")
        if user is None and opts["update"]:
            raise CommandError(f"User not found: {username}")
        if user is None and not password:
            raise CommandError("--password is required when creating an instructor.")
        if email and User.objects.filter(email__iexact=email).exclude(username=username).exists():
            raise CommandError(f"Email already in use: {email}")

        created = user is None
        if created:
            user = User.objects.create_user(username=username, email=email, password=password)
        elif password:
            user.set_password(password)

        if email:
            user.email = email
        if opts["first_name"]:
            user.first_name = opts["first_name"].strip()[:150]
        if opts["last_name"]:
            user.last_name = opts["last_name"].strip()[:150]
        user.is_staff = True
        user.is_superuser = False
        user.is_active = not opts["inactive"]
        user.save()

        verb = "Created" if created else "Updated"
        state = "inactive" if opts["inactive"] else "active"
        self.stdout.write(self.style.SUCCESS(f"{verb} instructor {username} ({state})."))
