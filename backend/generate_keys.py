import os
import secrets

from cryptography.fernet import Fernet

# Generate secrets
generated = {
    "JWT_SECRET": secrets.token_urlsafe(32),
    "TOKEN_ENCRYPTION_KEY": Fernet.generate_key().decode(),
    "OAUTH_STATE_SECRET": secrets.token_urlsafe(32),
    "CRON_SECRET": secrets.token_urlsafe(24),
}

for name, value in generated.items():
    print(f"Generated {name}: {value}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        content = f.read()

    # Replace "NAME=" placeholder lines, keep everything else
    new_lines = []
    for line in content.splitlines():
        name = line.split("=", 1)[0]
        if name in generated:
            new_lines.append(f"{name}={generated[name]}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
