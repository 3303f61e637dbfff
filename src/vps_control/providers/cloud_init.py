from __future__ import annotations

_TEMPLATE = """#!/bin/bash
set -e

# Kernel network tuning
cat >> /etc/sysctl.conf << 'EOF'
net.ipv4.tcp_fastopen = 3
net.ipv4.tcp_nodelay = 1
net.ipv4.tcp_quickack = 1
net.core.netdev_max_backlog = 65536
vm.swappiness = 10
net.core.rmem_max = 16777216
net.core.wmem_max = 16777216
EOF
sysctl -p || true

echo performance | tee /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor 2>/dev/null || true
systemctl disable --now snapd cups bluetooth avahi-daemon 2>/dev/null || true

apt-get update
apt-get install -y docker.io docker-compose curl nginx nodejs
systemctl enable --now docker

mkdir -p {bot_dir}/app/data

# Host agent on localhost:{agent_port}, published on port 80 through nginx
cat > /etc/systemd/system/hft-agent.service << 'EOF'
[Unit]
Description=HFT host agent
After=network.target docker.service

[Service]
Restart=always
RestartSec=1
WorkingDirectory={bot_dir}
EnvironmentFile=-{bot_dir}/.env
ExecStart=/usr/bin/node {bot_dir}/health.js

[Install]
WantedBy=multi-user.target
EOF

cat > /etc/nginx/sites-available/default << 'EOF'
server {{
    listen 80 default_server;
    location / {{
        proxy_pass http://127.0.0.1:{agent_port};
        proxy_read_timeout 30s;
    }}
}}
EOF
systemctl restart nginx

# Bot container supervised with a watchdog
cat > /etc/systemd/system/hft-bot.service << 'EOF'
[Unit]
Description=HFT Trading Bot
After=network.target docker.service

[Service]
Type=notify
Restart=always
RestartSec=1
WatchdogSec=5s
TimeoutStartSec=60
RestartForceExitStatus=SIGKILL SIGTERM
ExecStart={bot_dir}/start.sh
WorkingDirectory={bot_dir}

[Install]
WantedBy=multi-user.target
EOF

echo '#!/bin/bash' > {bot_dir}/start.sh
echo 'exec docker-compose up' >> {bot_dir}/start.sh
chmod +x {bot_dir}/start.sh

systemctl daemon-reload
systemctl enable hft-agent hft-bot
echo "HFT Bot setup complete"
"""


def render_cloud_init(*, bot_dir: str = "/opt/hft-bot", agent_port: int = 3000) -> str:
    return _TEMPLATE.format(bot_dir=bot_dir.rstrip("/"), agent_port=int(agent_port))


def nginx_proxy_snippet(*, agent_port: int = 8080) -> str:
    return (
        "cat > /etc/nginx/sites-available/default << 'EOF'\n"
        "server {\n"
        "    listen 80 default_server;\n"
        "    location / {\n"
        f"        proxy_pass http://127.0.0.1:{agent_port};\n"
        "    }\n"
        "}\n"
        "EOF\n"
        "apt-get install -y nginx && systemctl restart nginx\n"
        "ufw allow 80/tcp 2>/dev/null || true"
    )
