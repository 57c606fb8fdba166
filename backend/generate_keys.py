"""Generate INTERNAL_API_KEY and TOKEN_ENCRYPTION_KEY and write them into .env.

Reads .env.template, replaces the two placeholder lines and writes .env.
"""

import os
import secrets

from cryptography.fernet import Fernet

internal_key = secrets.token_urlsafe(32)
fernet_key = Fernet.generate_key().decode()

print(f"Generated INTERNAL_API_KEY: {internal_key}")
print(f"Generated TOKEN_ENCRYPTION_KEY: {fernet_key}")

template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        lines = f.read().splitlines()

    replacements = {
        "INTERNAL_API_KEY=": f"INTERNAL_API_KEY={internal_key}",
        "TOKEN_ENCRYPTION_KEY=": f"TOKEN_ENCRYPTION_KEY={fernet_key}",
    }
    new_lines = []
    for line in lines:
        prefix = next((p for p in replacements if line.startswith(p)), None)
        new_lines.append(replacements[prefix] if prefix else line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")
    print(f"Successfully wrote to {env_path}")
else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
