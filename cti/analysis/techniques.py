"""Fixed lookup tables: exposed port → service, and observations → ATT&CK techniques."""

from typing import Dict, NamedTuple, Optional


class PortService(NamedTuple):
    service: str        # normalized key, also used as a correlation label
    display: str
    exposure: str       # remote-access, remote-desktop, file-sharing, database, ...
    severity: str       # default severity of the exposure itself


class Technique(NamedTuple):
    technique_id: str
    name: str
    tactic: str


PORT_SERVICES: Dict[int, PortService] = {
    21: PortService("ftp", "FTP", "file-transfer", "medium"),
    22: PortService("ssh", "SSH", "remote-access", "medium"),
    23: PortService("telnet", "Telnet", "remote-access", "high"),
    445: PortService("smb", "SMB", "file-sharing", "high"),
    2375: PortService("docker", "Docker API", "container-management", "critical"),
    3306: PortService("mysql", "MySQL", "database", "high"),
    3389: PortService("rdp", "RDP", "remote-desktop", "high"),
    5432: PortService("postgres", "PostgreSQL", "database", "high"),
    6379: PortService("redis", "Redis", "database", "high"),
    6443: PortService("kubernetes", "Kubernetes API", "container-management", "high"),
    9200: PortService("elasticsearch", "Elasticsearch", "database", "high"),
    27017: PortService("mongodb", "MongoDB", "database", "high"),
}

_SSH = Technique("T1021.004", "Remote Services: SSH", "Lateral Movement")
_RDP = Technique("T1021.001", "Remote Services: RDP", "Lateral Movement")
_SMB = Technique("T1021.002", "Remote Services: SMB", "Lateral Movement")

PORT_TECHNIQUES: Dict[int, Technique] = {
    22: _SSH,
    3389: _RDP,
    445: _SMB,
}

# Checked in insertion order; first keyword wins per technique id.
KEYWORD_TECHNIQUES: Dict[str, Technique] = {
    "ssh": _SSH,
    "rdp": _RDP,
    "smb": _SMB,
    "brute": Technique("T1110", "Brute Force", "Credential Access"),
    "credential": Technique("T1078", "Valid Accounts", "Defense Evasion"),
    "phishing": Technique("T1566", "Phishing", "Initial Access"),
    "malware": Technique("T1204", "User Execution", "Execution"),
    "ransomware": Technique("T1486", "Data Encrypted for Impact", "Impact"),
    "c2": Technique("T1071", "Application Layer Protocol", "Command and Control"),
    "exfil": Technique("T1041", "Exfiltration Over C2", "Exfiltration"),
    "scan": Technique("T1046", "Network Service Discovery", "Discovery"),
    "vuln": Technique("T1190", "Exploit Public-Facing Application", "Initial Access"),
    "cve": Technique("T1190", "Exploit Public-Facing Application", "Initial Access"),
}


def port_service(port: Optional[int]) -> Optional[PortService]:
    if port is None:
        return None
    return PORT_SERVICES.get(port)
