import plistlib
import uuid

from wallet.models import DEFAULT_FALLBACK_CIDR


DEFAULT_EXCLUSIONS_BASE = ["localhost", "127.0.0.1"]


def _payload(display_name: str, payload_type: str, identifier: str, **extra) -> dict:
    return {
        "PayloadDisplayName": display_name,
        "PayloadIdentifier": identifier,
        "PayloadType": payload_type,
        "PayloadUUID": str(uuid.uuid4()),
        "PayloadVersion": 1,
        **extra,
    }


def _apn(apn: str, mask: int, auth: str) -> dict:
    return {
        "AllowedProtocolMask": mask,
        "AllowedProtocolMaskInDomesticRoaming": mask,
        "AllowedProtocolMaskInRoaming": mask,
        "AuthenticationType": auth,
        "DefaultProtocolMask": mask,
        "EnableXLAT464": True,
        "Name": apn,
        "Username": "",
    }


def build_mobileconfig(root_uuid: str, apn: str, selected_cidr: str = DEFAULT_FALLBACK_CIDR) -> str:
    """Render the iOS configuration profile delivered to the user."""
    cidr = selected_cidr if selected_cidr and "/" in selected_cidr else DEFAULT_FALLBACK_CIDR
    cellular = _payload(
        "Cellular", "com.apple.cellular", "com.apple.cellular",
        APNs=[_apn(apn, 3, "PAP"), _apn(apn, 1, "CHAP")],
        AttachAPN={"AllowedProtocolMask": 3, "AuthenticationType": "PAP", "Name": apn, "Username": ""},
    )
    vpn = _payload(
        "VPN", "com.apple.vpn.managed", f"com.apple.vpn.managed.{uuid.uuid4()}",
        UserDefinedName="VPN Configuration",
        VPNType="IPSec",
        IPSec={
            "AuthenticationMethod": "SharedSecret",
            "ExtendedAuthEnabled": False,
            "LocalIdentifier": apn,
            "RemoteAddress": "vpn.example.com",
            "SharedSecret": str(uuid.uuid4()),
            "XAuthEnabled": False,
            "XAuthName": apn,
            "XAuthPassword": apn,
        },
    )
    proxy = _payload(
        "Proxy", "com.apple.proxy", f"com.apple.proxy.{uuid.uuid4()}",
        HTTPEnable=False, HTTPPort=8080,
        HTTPSEnable=False, HTTPSPort=8080,
        FTPEnable=False, FTPPort=21,
        SOCKSEnable=False, SOCKSPort=1080,
        Server="",
        ExclusionList=DEFAULT_EXCLUSIONS_BASE + [cidr],
    )
    extra = _payload(
        "Additional Settings", "Configuration", f"com.example.additionalsettings.{uuid.uuid4()}",
        PayloadRemovalDisallowed=False,
        SignalBoostEnabled=True,
    )
    profile = {
        "PayloadContent": [cellular, vpn, proxy, extra],
        "PayloadDisplayName": "Configuration Profile",
        "PayloadIdentifier": "com.example.profile",
        "PayloadRemovalDisallowed": False,
        "PayloadType": "Configuration",
        "PayloadUUID": root_uuid,
        "PayloadVersion": 1,
    }
    return plistlib.dumps(profile, fmt=plistlib.FMT_XML).decode("utf-8")
