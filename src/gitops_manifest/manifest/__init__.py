# ABOUTME: Manifest pipeline package initialization
# ABOUTME: Components that turn a deployment trigger into merged chart values

"""
Manifest pipeline components

    - service.py: ManifestCreationService, sequences every step of a trigger
    - release.py: release override rendering (image, tag, release counter)
    - configsecret.py: config map / secret merge and resolution
    - merge.py: ordered JSON merge patch chain
    - livestate.py: external hash stamping and autoscaling preservation
    - autoscaling.py: HPA target derivation and replica clamping
    - allocator.py: release counter allocation with duplicate repair
    - pullsecret.py: registry image pull secret injection
"""
