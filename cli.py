import click

from models import db, User, ROLE_HOSPITAL


def register_commands(app):

    @app.cli.command("init-db")
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo("[OK] Database tables created")

    @app.cli.command("seed-hospital")
    @click.option("--username", default="hospital", show_default=True)
    @click.option("--password", default="hospital123", show_default=True)
    @click.option("--name", default="City Hospital", show_default=True)
    @click.option("--location", default=None)
    def seed_hospital(username, password, name, location):
        """Create a verified hospital account, or reset its password."""
        db.create_all()

        u = User.query.filter_by(username=username).first()
        if not u:
            u = User(username=username, role=ROLE_HOSPITAL, name=name, location=location, is_verified=True)
            u.set_password(password)
            db.session.add(u)
            db.session.commit()
            click.echo(f"[OK] Created hospital '{username}'")
        else:
            u.set_password(password)
            db.session.commit()
            click.echo(f"[OK] Reset password for '{username}'")

    @app.cli.command("list-users")
    def list_users():
        users = User.query.order_by(User.id).all()
        if not users:
            click.echo("No users found.")
            return
        for u in users:
            click.echo(f"{u.id} {u.username} {u.role} {'verified' if u.is_verified else 'unverified'}")

    @app.cli.command("check-login")
    @click.argument("username")
    @click.argument("password")
    def check_login(username, password):
        u = User.query.filter_by(username=username).first()
        if not u:
            click.echo(f"User not found: {username}")
            raise SystemExit(1)
        click.echo(f"Found user: {u.username} role: {u.role}")
        click.echo(f"Password check: {u.check_password(password)}")
